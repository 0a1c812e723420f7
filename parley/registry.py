import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import ServerConnectionError
from .providers import LOCAL_PROVIDER_ID, ModelRef, ProviderAdapter


logger = logging.getLogger("uvicorn.error")


def model_color(model_id: str) -> str:
    digest = hashlib.md5(model_id.encode("utf-8")).hexdigest()
    return f"#{digest[:6]}"


@dataclass
class ModelInfo:
    id: str
    provider: str
    name: str
    available: bool = True

    @property
    def color(self) -> str:
        return model_color(self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "name": self.name,
            "available": self.available,
            "color": self.color,
        }


@dataclass
class _CacheEntry:
    value: Any
    fetched_at: float


class ModelRegistry:
    """Per-provider model lists and reachability, each cached with a short TTL.

    A cache hit older than ``refresh_after_s`` schedules a background refresh
    so the next read is warm. Failures never raise: an unreachable provider
    contributes no models and reports ``False`` from ``is_reachable``.
    """

    def __init__(
        self,
        providers: Dict[str, ProviderAdapter],
        ttl_s: float = 5.0,
        refresh_after_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.providers = providers
        self.ttl_s = ttl_s
        self.refresh_after_s = ttl_s / 2 if refresh_after_s is None else refresh_after_s
        self._clock = clock
        self._cache: Dict[Tuple[str, str], _CacheEntry] = {}
        self._refresh_tasks: Dict[Tuple[str, str], asyncio.Task] = {}

    @property
    def cloud_ids(self) -> List[str]:
        return [pid for pid in self.providers if pid != LOCAL_PROVIDER_ID]

    def ref(self, model_id: str) -> ModelRef:
        return ModelRef.parse(model_id, self.cloud_ids)

    def provider_for(self, model_id: str) -> Optional[ProviderAdapter]:
        return self.providers.get(self.ref(model_id).provider)

    async def list_models(self) -> List[ModelInfo]:
        infos: List[ModelInfo] = []
        for provider_id in self.providers:
            for name in await self._provider_models(provider_id):
                ref = ModelRef(provider=provider_id, name=name)
                infos.append(ModelInfo(id=ref.wire_id, provider=provider_id, name=name))
        return infos

    async def model_ids(self) -> List[str]:
        return [info.id for info in await self.list_models()]

    async def is_available(self, model_id: str) -> bool:
        ref = self.ref(model_id)
        if ref.provider not in self.providers:
            return False
        return ref.name in await self._provider_models(ref.provider)

    async def is_server_reachable(self) -> bool:
        return await self.is_reachable(LOCAL_PROVIDER_ID)

    async def is_reachable(self, provider_id: str) -> bool:
        if provider_id not in self.providers:
            return False
        return bool(await self._cached(("reachable", provider_id), lambda: self._fetch_reachable(provider_id)))

    def invalidate(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        tasks = [t for t in self._refresh_tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refresh_tasks.clear()

    async def _provider_models(self, provider_id: str) -> List[str]:
        return list(await self._cached(("models", provider_id), lambda: self._fetch_models(provider_id)))

    async def _cached(self, key: Tuple[str, str], fetch: Callable[[], Awaitable[Any]]) -> Any:
        now = self._clock()
        entry = self._cache.get(key)
        if entry is not None and now - entry.fetched_at < self.ttl_s:
            if now - entry.fetched_at >= self.refresh_after_s:
                self._schedule_refresh(key, fetch)
            return entry.value
        value = await fetch()
        self._cache[key] = _CacheEntry(value=value, fetched_at=self._clock())
        return value

    def _schedule_refresh(self, key: Tuple[str, str], fetch: Callable[[], Awaitable[Any]]) -> None:
        running = self._refresh_tasks.get(key)
        if running is not None and not running.done():
            return

        async def _refresh() -> None:
            value = await fetch()
            self._cache[key] = _CacheEntry(value=value, fetched_at=self._clock())

        self._refresh_tasks[key] = asyncio.create_task(_refresh())

    async def _fetch_models(self, provider_id: str) -> List[str]:
        provider = self.providers[provider_id]
        try:
            return await provider.list_models()
        except ServerConnectionError as exc:
            logger.warning("Model list for provider %s unavailable: %s", provider_id, exc)
            return []

    async def _fetch_reachable(self, provider_id: str) -> bool:
        provider = self.providers[provider_id]
        try:
            return await provider.ping()
        except ServerConnectionError:
            return False
