import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol

from .config import AppSettings, CloudProviderConfig
from .errors import ServerConnectionError
from .framing import ChatFragment, NDJSONFragmentParser, SSEFragmentParser, LineFramer
from .transport import StreamHandle, Transport


logger = logging.getLogger("uvicorn.error")

LOCAL_PROVIDER_ID = "local"
_PING_TIMEOUT_S = 2.0
_OPENAI_OPTION_MAP = {
    "temperature": "temperature",
    "top_p": "top_p",
    "seed": "seed",
    "presence_penalty": "presence_penalty",
    "frequency_penalty": "frequency_penalty",
    "stop": "stop",
}


@dataclass(frozen=True)
class ModelRef:
    """Tagged model identifier.

    The wire form of a cloud model carries its provider as a ``"<id>:"``
    prefix; local models are plain Ollama names (which may contain a ``:tag``).
    """

    provider: str
    name: str

    @property
    def is_local(self) -> bool:
        return self.provider == LOCAL_PROVIDER_ID

    @property
    def wire_id(self) -> str:
        if self.is_local:
            return self.name
        return f"{self.provider}:{self.name}"

    @classmethod
    def parse(cls, wire_id: str, cloud_ids: Iterable[str] = ()) -> "ModelRef":
        prefix, sep, rest = wire_id.partition(":")
        if sep and rest and prefix in set(cloud_ids):
            return cls(provider=prefix, name=rest)
        return cls(provider=LOCAL_PROVIDER_ID, name=wire_id)


@dataclass
class ChatRequest:
    model: str
    messages: List[Dict[str, str]]
    options: Dict[str, Any] = field(default_factory=dict)
    suffix: Optional[str] = None


class FragmentStream:
    def __init__(self, handle: StreamHandle, parser: LineFramer) -> None:
        self.handle = handle
        self.parser = parser
        self._iterator: Optional[AsyncIterator[ChatFragment]] = None

    @property
    def dropped(self) -> int:
        return self.parser.dropped

    def __aiter__(self) -> AsyncIterator[ChatFragment]:
        if self._iterator is None:
            self._iterator = self._iterate()
        return self._iterator

    async def _iterate(self) -> AsyncIterator[ChatFragment]:
        async for chunk in self.handle.chunks():
            for fragment in self.parser.feed(chunk):
                yield fragment
        if not self.handle.closed:
            for fragment in self.parser.flush():
                yield fragment

    async def aclose(self) -> None:
        await self.handle.close()
        iterator = self._iterator
        if iterator is not None:
            try:
                await iterator.aclose()  # type: ignore[attr-defined]
            except RuntimeError:
                pass


class ProviderAdapter(Protocol):
    id: str

    async def list_models(self) -> List[str]:
        ...

    async def ping(self) -> bool:
        ...

    async def open_chat(self, request: ChatRequest) -> FragmentStream:
        ...

    async def close(self) -> None:
        ...


class OllamaProvider:
    id = LOCAL_PROVIDER_ID

    def __init__(self, transport: Transport, max_malformed_fragments: int = 5) -> None:
        self.transport = transport
        self.max_malformed_fragments = max_malformed_fragments

    async def list_models(self) -> List[str]:
        data = await self.transport.request_json("GET", "/api/tags")
        models = data.get("models", []) if isinstance(data, dict) else []
        return [str(m.get("name") or m.get("model")) for m in models if isinstance(m, dict) and (m.get("name") or m.get("model"))]

    async def ping(self) -> bool:
        try:
            await self.transport.request_json("GET", "/api/tags", timeout=_PING_TIMEOUT_S)
        except ServerConnectionError:
            return False
        return True

    def build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": request.messages,
            "stream": True,
        }
        if request.options:
            payload["options"] = dict(request.options)
        if request.suffix:
            payload["suffix"] = request.suffix
        return payload

    async def open_chat(self, request: ChatRequest) -> FragmentStream:
        handle = await self.transport.open("POST", "/api/chat", self.build_payload(request))
        return FragmentStream(handle, NDJSONFragmentParser(self.max_malformed_fragments))

    async def close(self) -> None:
        await self.transport.close()


class OpenAICompatibleProvider:
    """Cloud provider speaking the OpenAI chat-completions protocol."""

    def __init__(
        self,
        provider_id: str,
        transport: Transport,
        models: Optional[List[str]] = None,
        max_malformed_fragments: int = 5,
    ) -> None:
        self.id = provider_id
        self.transport = transport
        self.models = list(models or [])
        self.max_malformed_fragments = max_malformed_fragments

    async def list_models(self) -> List[str]:
        if self.models:
            return list(self.models)
        data = await self.transport.request_json("GET", "/models")
        items = data.get("data", []) if isinstance(data, dict) else []
        return [str(m["id"]) for m in items if isinstance(m, dict) and m.get("id")]

    async def ping(self) -> bool:
        if self.models:
            return True
        try:
            await self.transport.request_json("GET", "/models", timeout=_PING_TIMEOUT_S)
        except ServerConnectionError:
            return False
        return True

    def build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        messages = [dict(m) for m in request.messages]
        if request.suffix and messages and messages[-1].get("role") == "user":
            messages[-1]["content"] = f"{messages[-1]['content']}\n\n{request.suffix}"
        payload: Dict[str, Any] = {"model": request.model, "messages": messages, "stream": True}
        for option, key in _OPENAI_OPTION_MAP.items():
            if option in request.options:
                payload[key] = request.options[option]
        max_tokens = request.options.get("num_predict")
        if isinstance(max_tokens, int) and max_tokens > 0:
            payload["max_tokens"] = max_tokens
        return payload

    async def open_chat(self, request: ChatRequest) -> FragmentStream:
        handle = await self.transport.open("POST", "/chat/completions", self.build_payload(request))
        return FragmentStream(handle, SSEFragmentParser(self.max_malformed_fragments))

    async def close(self) -> None:
        await self.transport.close()


def build_cloud_provider(provider_id: str, config: CloudProviderConfig, settings: AppSettings) -> OpenAICompatibleProvider:
    headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
    transport = Transport(
        config.base_url,
        timeout=settings.request_timeout_s,
        connect_timeout=settings.connect_timeout_s,
        headers=headers,
    )
    return OpenAICompatibleProvider(
        provider_id,
        transport,
        models=config.models,
        max_malformed_fragments=settings.max_malformed_fragments,
    )


def build_providers(settings: AppSettings) -> Dict[str, ProviderAdapter]:
    local = OllamaProvider(
        Transport(
            settings.ollama_base_url,
            timeout=settings.request_timeout_s,
            connect_timeout=settings.connect_timeout_s,
        ),
        max_malformed_fragments=settings.max_malformed_fragments,
    )
    providers: Dict[str, ProviderAdapter] = {local.id: local}
    for provider_id, config in settings.cloud_providers.items():
        if provider_id == LOCAL_PROVIDER_ID:
            logger.warning("Ignoring cloud provider named %r (reserved id)", provider_id)
            continue
        providers[provider_id] = build_cloud_provider(provider_id, config, settings)
    return providers
