import asyncio
import logging
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from .errors import EmptyPromptError, EngineError, MultishotInProgress
from .events import EventBus
from .orchestrator import RequestOrchestrator


logger = logging.getLogger("uvicorn.error")


class MultishotStatus(str, Enum):
    NOT_RUNNING = "not_running"
    RUNNING = "running"
    DONE = "done"
    HALTED = "halted"


def register_name(index: int) -> str:
    letters = string.ascii_lowercase
    if index < len(letters):
        return letters[index]
    return f"r{index}"


@dataclass
class Register:
    name: str
    model: str
    content: str = ""
    status: str = "pending"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "model": self.model, "content": self.content, "status": self.status}


@dataclass
class MultishotState:
    sequence: Tuple[str, ...]
    prompt: str
    index: int = 0
    status: MultishotStatus = MultishotStatus.NOT_RUNNING
    registers: Dict[str, Register] = field(default_factory=dict)
    halted_at: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": list(self.sequence),
            "prompt": self.prompt,
            "index": self.index,
            "status": self.status.value,
            "registers": {name: reg.to_dict() for name, reg in self.registers.items()},
            "halted_at": self.halted_at,
            "error": self.error,
        }


class MultishotSequencer:
    """Runs one prompt against an ordered list of models, strictly one at a time.

    Each step must complete before the next starts; the first step that does
    not complete halts the sequence at its index.
    """

    def __init__(self, orchestrator: RequestOrchestrator, events: EventBus) -> None:
        self.orchestrator = orchestrator
        self.events = events
        self.state: Optional[MultishotState] = None

    @property
    def running(self) -> bool:
        return self.state is not None and self.state.status is MultishotStatus.RUNNING

    @property
    def status(self) -> MultishotStatus:
        return self.state.status if self.state else MultishotStatus.NOT_RUNNING

    async def start(self, prompt: str, sequence: Sequence[str]) -> MultishotState:
        if self.running:
            raise MultishotInProgress()
        if not prompt or not prompt.strip():
            raise EmptyPromptError()
        models = tuple(m for m in sequence if m)
        if not models:
            raise ValueError("Multishot sequence must name at least one model.")
        state = MultishotState(
            sequence=models,
            prompt=prompt,
            status=MultishotStatus.RUNNING,
            registers={register_name(i): Register(name=register_name(i), model=m) for i, m in enumerate(models)},
        )
        self.state = state
        previous_model = self.orchestrator.active_model
        await self.events.emit("multishot_started", {"sequence": list(models)})
        try:
            while state.index < len(state.sequence):
                index = state.index
                model = state.sequence[index]
                register = state.registers[register_name(index)]
                self.orchestrator.active_model = model
                try:
                    result = await self.orchestrator.send(prompt, model, include_history=True, strict_model=True)
                except EngineError as exc:
                    register.status = "failed"
                    await self._halt(state, index, str(exc))
                    break
                register.content = result.content
                register.status = result.status
                if not result.completed:
                    await self._halt(state, index, result.error or result.status)
                    break
                state.index += 1
                await self.events.emit(
                    "multishot_step",
                    {"index": index, "model": model, "register": register.name},
                )
            else:
                state.status = MultishotStatus.DONE
                await self.events.emit("multishot_done", {"sequence": list(models), "progress": state.index})
        except asyncio.CancelledError:
            index = min(state.index, len(state.sequence) - 1)
            state.registers[register_name(index)].status = "cancelled"
            await self._halt(state, index, "cancelled")
            raise
        finally:
            self.orchestrator.active_model = previous_model
        return state

    async def _halt(self, state: MultishotState, index: int, reason: str) -> None:
        state.status = MultishotStatus.HALTED
        state.halted_at = index
        state.error = reason
        logger.info("Multishot halted at step %d (%s): %s", index, state.sequence[index], reason)
        await self.events.emit(
            "multishot_halted",
            {"index": index, "model": state.sequence[index], "reason": reason},
        )
