import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .engine import Engine
from .errors import (
    EmptyPromptError,
    EngineError,
    ModelUnavailableError,
    MultishotInProgress,
    NoModelsAvailable,
    OfflineError,
    ParameterProfileNotFound,
    UnknownCommandError,
    UnknownParameterError,
)
from .events import EventBus
from .schemas import (
    CommandRequest,
    Message,
    MultishotRequest,
    ParameterUpdate,
    SendRequest,
    TextSetting,
)
from .session_store import SessionStore


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.engine.events


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (EmptyPromptError, UnknownParameterError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (ParameterProfileNotFound, UnknownCommandError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, MultishotInProgress):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (OfflineError, NoModelsAvailable, ModelUnavailableError)):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


router = APIRouter()


@router.get("/api/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/api/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    engine: Engine = Depends(get_engine),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    await engine.apply_settings(new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/status")
async def get_status(engine: Engine = Depends(get_engine)):
    return await engine.status()


@router.get("/api/models")
async def list_models(engine: Engine = Depends(get_engine)):
    models = await engine.list_models()
    return {
        "models": [m.to_dict() for m in models],
        "current_model": engine.current_model,
        "server_reachable": await engine.registry.is_server_reachable(),
    }


@router.post("/api/model")
async def set_model(payload: TextSetting, engine: Engine = Depends(get_engine)):
    engine.set_model(payload.value)
    return {"current_model": engine.current_model}


@router.post("/api/send")
async def send(payload: SendRequest, engine: Engine = Depends(get_engine)):
    try:
        if payload.with_history:
            result = await engine.send_with_history(payload.prompt, payload.model)
        else:
            result = await engine.send(payload.prompt, payload.model)
    except EngineError as exc:
        raise to_http_error(exc) from exc
    return {"result": result.model_dump()}


@router.post("/api/cancel")
async def cancel(engine: Engine = Depends(get_engine)):
    cancelled = await engine.cancel()
    return {"ok": True, "cancelled": cancelled}


@router.post("/api/multishot")
async def start_multishot(payload: MultishotRequest, engine: Engine = Depends(get_engine)):
    try:
        state = await engine.start_multishot(payload.prompt, payload.models)
    except (EngineError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return {"multishot": state.to_dict()}


@router.get("/api/multishot")
async def get_multishot(engine: Engine = Depends(get_engine)):
    state = engine.multishot.state
    return {"multishot": state.to_dict() if state else None}


@router.get("/api/history/{model:path}")
async def get_history(model: str, engine: Engine = Depends(get_engine)):
    return {"model": model, "messages": [m.model_dump() for m in engine.get_history(model)]}


@router.put("/api/history/{model:path}")
async def replace_history(
    model: str,
    messages: List[Message] = Body(...),
    engine: Engine = Depends(get_engine),
):
    engine.replace_history(model, messages)
    return {"model": model, "messages": [m.model_dump() for m in engine.get_history(model)]}


@router.delete("/api/history/{model:path}")
async def clear_history(model: str, engine: Engine = Depends(get_engine)):
    await engine.clear_history(model)
    return {"ok": True}


@router.delete("/api/history")
async def clear_all_history(engine: Engine = Depends(get_engine)):
    await engine.clear_all_history()
    return {"ok": True}


@router.post("/api/system-prompt")
async def set_system_prompt(payload: TextSetting, engine: Engine = Depends(get_engine)):
    engine.set_system_prompt(payload.value)
    return {"system_prompt": engine.system_prompt}


@router.post("/api/suffix")
async def set_suffix(payload: TextSetting, engine: Engine = Depends(get_engine)):
    engine.set_suffix(payload.value)
    return {"suffix": engine.suffix}


@router.get("/api/parameters")
async def get_parameters(engine: Engine = Depends(get_engine)):
    return {"parameters": engine.parameters.to_dict()}


@router.post("/api/parameters")
async def update_parameters(payload: ParameterUpdate, engine: Engine = Depends(get_engine)):
    try:
        data = await engine.set_parameters(payload.values)
    except EngineError as exc:
        raise to_http_error(exc) from exc
    return {"parameters": data}


@router.post("/api/parameters/reset")
async def reset_parameters(engine: Engine = Depends(get_engine)):
    return {"parameters": await engine.reset_parameters()}


@router.post("/api/profiles/{name}")
async def apply_profile(name: str, engine: Engine = Depends(get_engine)):
    try:
        data = await engine.apply_parameter_profile(name)
    except EngineError as exc:
        raise to_http_error(exc) from exc
    return {"parameters": data}


@router.get("/api/commands")
async def list_commands(engine: Engine = Depends(get_engine)):
    return {"commands": [c.to_dict() for c in engine.commands.values()]}


@router.post("/api/commands/{command_id}")
async def run_command(command_id: str, payload: CommandRequest, engine: Engine = Depends(get_engine)):
    try:
        result = await engine.run_command(command_id, payload.text)
    except EngineError as exc:
        raise to_http_error(exc) from exc
    return {"ok": True, "result": result.model_dump() if result else None}


@router.get("/api/session")
async def export_session(engine: Engine = Depends(get_engine)):
    return engine.export_state()


@router.put("/api/session")
async def import_session(payload: Dict[str, Any] = Body(...), engine: Engine = Depends(get_engine)):
    try:
        engine.import_state(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return engine.export_state()


@router.get("/api/sessions")
async def list_sessions(store: SessionStore = Depends(get_session_store)):
    return {"sessions": await store.list()}


@router.post("/api/sessions/{name}")
async def save_session(
    name: str,
    engine: Engine = Depends(get_engine),
    store: SessionStore = Depends(get_session_store),
):
    await store.save(name, engine.export_state())
    return {"ok": True, "name": name}


@router.get("/api/sessions/{name}")
async def load_session(
    name: str,
    engine: Engine = Depends(get_engine),
    store: SessionStore = Depends(get_session_store),
):
    snapshot = await store.load(name)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Session not found")
    try:
        engine.import_state(snapshot)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return engine.export_state()


@router.delete("/api/sessions/{name}")
async def delete_session(name: str, store: SessionStore = Depends(get_session_store)):
    if not await store.delete(name):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True}


@router.get("/api/events")
async def stream_events(replay: bool = False, bus: EventBus = Depends(get_event_bus)):
    # Optionally replay recent events, then stream new ones
    async def event_generator():
        queue = await bus.subscribe()
        try:
            if replay:
                for ev in bus.list_recent():
                    yield sse_format(ev)
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    engine: Optional[Engine] = None,
    session_store: Optional[SessionStore] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.session_store.init()
        try:
            yield
        finally:
            await app.state.engine.close()

    app = FastAPI(title="Parley Chat Engine", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine or Engine(settings)
    app.state.session_store = session_store or SessionStore(settings.session_db_path)
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    try:
        uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
