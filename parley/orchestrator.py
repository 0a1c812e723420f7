import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import EmptyPromptError, NoModelsAvailable, OfflineError, ServerConnectionError
from .events import EventBus
from .history import ConversationStore
from .parameters import ParameterSet
from .providers import LOCAL_PROVIDER_ID, ChatRequest, FragmentStream
from .registry import ModelRegistry
from .resolver import ModelResolver
from .schemas import ExchangeResult, ExchangeStats


logger = logging.getLogger("uvicorn.error")


class ExchangeState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"


@dataclass
class RequestContext:
    prompt: str
    requested_model: Optional[str]
    include_history: bool = True
    system_prompt: Optional[str] = None
    suffix: Optional[str] = None
    parameter_overrides: Dict[str, Any] = field(default_factory=dict)
    resolved_model: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    response: List[str] = field(default_factory=list)
    tokens: int = 0
    token_rate: float = 0.0
    dropped: int = 0
    started_at: float = 0.0
    first_fragment_at: Optional[float] = None
    final_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return "".join(self.response)


class RequestOrchestrator:
    """Drives one exchange at a time: resolve, send, stream, commit.

    Starting an exchange while another is in flight cancels the previous one
    first. Only a completed exchange is committed to the conversation store,
    and always as a user/assistant pair.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        resolver: ModelResolver,
        history: ConversationStore,
        parameters: ParameterSet,
        events: EventBus,
        rate_interval_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.history = history
        self.parameters = parameters
        self.events = events
        self.rate_interval_s = rate_interval_s
        self._clock = clock
        self.active_model: Optional[str] = None
        self.system_prompt: Optional[str] = None
        self.suffix: Optional[str] = None
        self.state = ExchangeState.IDLE
        self.transitions: List[ExchangeState] = []
        self.context: Optional[RequestContext] = None
        self.last_result: Optional[ExchangeResult] = None
        self._task: Optional[asyncio.Task] = None
        self._stream: Optional[FragmentStream] = None
        self._rate_task: Optional[asyncio.Task] = None
        self._start_lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def send(
        self,
        prompt: str,
        model: Optional[str] = None,
        *,
        include_history: bool = True,
        system_prompt: Optional[str] = None,
        parameter_overrides: Optional[Dict[str, Any]] = None,
        strict_model: bool = False,
    ) -> ExchangeResult:
        if not prompt or not prompt.strip():
            raise EmptyPromptError()
        overrides = dict(parameter_overrides or {})
        self.parameters.validate(overrides)
        requested = model or self.active_model
        target = requested or self.resolver.default_model
        provider_id = self.registry.ref(target).provider if target else LOCAL_PROVIDER_ID
        if not await self.registry.is_reachable(provider_id):
            raise OfflineError()
        async with self._start_lock:
            await self.cancel()
            ctx = RequestContext(
                prompt=prompt,
                requested_model=requested,
                include_history=include_history,
                system_prompt=system_prompt if system_prompt is not None else self.system_prompt,
                suffix=self.suffix,
                parameter_overrides=overrides,
                started_at=self._clock(),
            )
            task = asyncio.create_task(self._run(ctx, strict_model))
            self._task = task
        try:
            # cancel() ends the exchange with a result; a cancelled caller still sees CancelledError
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        self.last_result = result
        return result

    async def cancel(self) -> bool:
        task = self._task
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    def status(self) -> Dict[str, Any]:
        ctx = self.context
        return {
            "state": self.state.value,
            "busy": self.busy,
            "active_model": self.active_model,
            "system_prompt": self.system_prompt,
            "suffix": self.suffix,
            "last_result": self.last_result.model_dump() if self.last_result else None,
            "exchange": {
                "requested_model": ctx.requested_model,
                "model": ctx.resolved_model,
                "tokens": ctx.tokens,
                "tokens_per_s": round(ctx.token_rate, 2),
            }
            if ctx
            else None,
        }

    async def _run(self, ctx: RequestContext, strict_model: bool) -> ExchangeResult:
        self.context = ctx
        self.transitions = []
        stream: Optional[FragmentStream] = None
        try:
            self._transition(ExchangeState.RESOLVING)
            resolution = await self.resolver.resolve(ctx.requested_model, strict=strict_model)
            if resolution.choice_required:
                await self.events.emit(
                    "model_choice_required",
                    {"requested": resolution.requested, "candidates": resolution.candidates},
                )
                return ExchangeResult(
                    status="choice_required",
                    requested_model=resolution.requested,
                    candidates=resolution.candidates,
                )
            model = str(resolution.model)
            ctx.resolved_model = model
            if resolution.fallback_used:
                await self.events.emit("model_fallback", {"requested": resolution.requested, "actual": model})
            provider = self.registry.provider_for(model)
            if provider is None:
                raise NoModelsAvailable(f"No provider registered for {model!r}.")

            with self.parameters.command_scope(ctx.parameter_overrides):
                ctx.parameters = self.parameters.get_modified_for_request()
                self._transition(ExchangeState.SENDING)
                request = ChatRequest(
                    model=self.registry.ref(model).name,
                    messages=self._build_messages(ctx, model),
                    options=ctx.parameters,
                    suffix=ctx.suffix,
                )
                await self.events.emit("sending", {"model": model, "requested": ctx.requested_model})
                stream = await provider.open_chat(request)
                self._stream = stream
                done = False
                async for fragment in stream:
                    if self.state is ExchangeState.SENDING:
                        self._transition(ExchangeState.STREAMING)
                        ctx.first_fragment_at = self._clock()
                        self._start_rate_timer(ctx)
                    if fragment.content:
                        ctx.response.append(fragment.content)
                        ctx.tokens += 1
                        await self.events.emit(
                            "streaming", {"model": model, "delta": fragment.content, "tokens": ctx.tokens}
                        )
                    if fragment.done:
                        ctx.final_data = fragment.data
                        done = True
                        break
                ctx.dropped = stream.dropped
                if not done:
                    raise ServerConnectionError("Stream ended before the final fragment.")

                self._transition(ExchangeState.FINALIZING)
                self._stop_rate_timer()
                stats = self._final_stats(ctx)
                self.history.append_pair(model, ctx.prompt, ctx.text)
                self.active_model = model

            result = ExchangeResult(
                status="completed",
                model=model,
                requested_model=ctx.requested_model,
                content=ctx.text,
                stats=stats,
            )
            await self.events.emit("finished", {"model": model, "stats": stats.model_dump()})
            return result
        except asyncio.CancelledError:
            return await self._interrupt(ctx, stream, "cancelled", "cancelled")
        except ServerConnectionError as exc:
            logger.warning("Exchange with %s interrupted: %s", ctx.resolved_model, exc)
            return await self._interrupt(ctx, stream, "interrupted", str(exc))
        finally:
            self._stop_rate_timer()
            if stream is not None:
                await stream.aclose()
            self._stream = None
            self.context = None
            self._transition(ExchangeState.IDLE)

    async def _interrupt(
        self,
        ctx: RequestContext,
        stream: Optional[FragmentStream],
        status: str,
        reason: str,
    ) -> ExchangeResult:
        self._transition(ExchangeState.CANCELLED)
        self._stop_rate_timer()
        if stream is not None:
            ctx.dropped = stream.dropped
        await self.events.emit(
            "interrupted",
            {"model": ctx.resolved_model, "reason": reason, "partial": ctx.text},
        )
        return ExchangeResult(
            status=status,  # type: ignore[arg-type]
            model=ctx.resolved_model,
            requested_model=ctx.requested_model,
            content=ctx.text,
            stats=self._running_stats(ctx),
            error=reason,
        )

    def _build_messages(self, ctx: RequestContext, model: str) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if ctx.system_prompt:
            messages.append({"role": "system", "content": ctx.system_prompt})
        if ctx.include_history:
            messages.extend(m.to_wire() for m in self.history.get(model))
        messages.append({"role": "user", "content": ctx.prompt})
        return messages

    def _transition(self, state: ExchangeState) -> None:
        self.state = state
        self.transitions.append(state)

    def _start_rate_timer(self, ctx: RequestContext) -> None:
        self._stop_rate_timer()
        if self.rate_interval_s > 0:
            self._rate_task = asyncio.create_task(self._rate_loop(ctx))

    def _stop_rate_timer(self) -> None:
        task, self._rate_task = self._rate_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _rate_loop(self, ctx: RequestContext) -> None:
        while True:
            await asyncio.sleep(self.rate_interval_s)
            ctx.token_rate = self._observed_rate(ctx)
            await self.events.emit(
                "rate",
                {"model": ctx.resolved_model, "tokens": ctx.tokens, "tokens_per_s": round(ctx.token_rate, 2)},
            )

    def _elapsed(self, ctx: RequestContext) -> float:
        start = ctx.first_fragment_at if ctx.first_fragment_at is not None else ctx.started_at
        return max(0.0, self._clock() - start)

    def _observed_rate(self, ctx: RequestContext) -> float:
        elapsed = self._elapsed(ctx)
        return ctx.tokens / elapsed if elapsed > 0 else 0.0

    def _running_stats(self, ctx: RequestContext) -> ExchangeStats:
        return ExchangeStats(
            tokens=ctx.tokens,
            elapsed_s=round(self._elapsed(ctx), 3),
            tokens_per_s=round(self._observed_rate(ctx), 2),
            dropped_fragments=ctx.dropped,
        )

    def _final_stats(self, ctx: RequestContext) -> ExchangeStats:
        stats = self._running_stats(ctx)
        data = ctx.final_data
        eval_count = data.get("eval_count")
        eval_duration = data.get("eval_duration")
        if isinstance(eval_count, int) and eval_count > 0:
            stats.tokens = eval_count
            if isinstance(eval_duration, (int, float)) and eval_duration > 0:
                # Ollama reports durations in nanoseconds
                stats.tokens_per_s = round(eval_count / (eval_duration / 1e9), 2)
        prompt_count = data.get("prompt_eval_count")
        if isinstance(prompt_count, int):
            stats.prompt_tokens = prompt_count
        return stats
