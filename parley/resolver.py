import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple

from .errors import ModelUnavailableError, NoModelsAvailable
from .providers import ModelRef
from .registry import ModelRegistry


logger = logging.getLogger("uvicorn.error")

ResolutionTier = Literal["requested", "default", "choice"]


def match_model_id(ref: ModelRef, available: List[str]) -> Optional[str]:
    """Match a model against the available ids, allowing Ollama's implicit ``:latest`` tag."""
    wire_id = ref.wire_id
    if wire_id in available:
        return wire_id
    if not ref.is_local:
        return None
    if ":" not in ref.name:
        tagged = f"{ref.name}:latest"
        if tagged in available:
            return tagged
    elif ref.name.endswith(":latest"):
        bare = ref.name[: -len(":latest")]
        if bare in available:
            return bare
    return None


@dataclass
class Resolution:
    model: Optional[str]
    requested: Optional[str]
    tier: ResolutionTier = "requested"
    candidates: List[str] = field(default_factory=list)

    @property
    def choice_required(self) -> bool:
        return self.tier == "choice"

    @property
    def fallback_used(self) -> bool:
        return self.tier == "default" and self.requested is not None

    def as_tuple(self) -> Tuple[Optional[str], Optional[str]]:
        return self.model, self.requested


class ModelResolver:
    """Requested model, then configured default, then ask the caller to choose."""

    def __init__(self, registry: ModelRegistry, default_model: Optional[str] = None) -> None:
        self.registry = registry
        self.default_model = default_model

    async def resolve(self, requested: Optional[str], strict: bool = False) -> Resolution:
        available = await self.registry.model_ids()
        if requested:
            matched = match_model_id(self.registry.ref(requested), available)
            if matched:
                return Resolution(model=matched, requested=requested, tier="requested")
            if strict:
                if not available:
                    raise NoModelsAvailable()
                raise ModelUnavailableError(requested)
        if self.default_model:
            matched = match_model_id(self.registry.ref(self.default_model), available)
            if matched:
                if requested:
                    logger.info("Model %s unavailable; using default %s", requested, matched)
                return Resolution(model=matched, requested=requested, tier="default")
        if available:
            return Resolution(model=None, requested=requested, tier="choice", candidates=list(available))
        raise NoModelsAvailable()
