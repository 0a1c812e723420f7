import json

import httpx
import pytest
import respx

from parley.config import AppSettings, CloudProviderConfig
from parley.providers import (
    LOCAL_PROVIDER_ID,
    ChatRequest,
    ModelRef,
    OllamaProvider,
    OpenAICompatibleProvider,
    build_providers,
)
from parley.transport import Transport


def test_model_ref_parses_cloud_prefix_only_for_known_providers():
    ref = ModelRef.parse("claude:opus", ["claude"])
    assert ref.provider == "claude"
    assert ref.name == "opus"
    assert ref.wire_id == "claude:opus"

    local = ModelRef.parse("llama3:8b", ["claude"])
    assert local.provider == LOCAL_PROVIDER_ID
    assert local.is_local
    assert local.wire_id == "llama3:8b"


@pytest.mark.asyncio
async def test_ollama_lists_tags():
    provider = OllamaProvider(Transport("http://ollama.test"))
    with respx.mock:
        respx.get("http://ollama.test/api/tags").mock(
            return_value=httpx.Response(200, json={"models": [{"name": "llama3:latest"}, {"model": "phi3:mini"}]})
        )
        models = await provider.list_models()
    assert models == ["llama3:latest", "phi3:mini"]
    await provider.close()


@pytest.mark.asyncio
async def test_ollama_ping_false_when_unreachable():
    provider = OllamaProvider(Transport("http://ollama.test"))
    with respx.mock:
        respx.get("http://ollama.test/api/tags").mock(side_effect=httpx.ConnectError("refused"))
        assert await provider.ping() is False
    await provider.close()


@pytest.mark.asyncio
async def test_ollama_chat_payload_and_stream():
    provider = OllamaProvider(Transport("http://ollama.test"))
    captured = {}
    body = (
        b'noise{"message":{"role":"assistant","content":"Hello "},"done":false}\n'
        b'{"message":{"role":"assistant","content":"world"},"done":false}\n'
        b'{"message":{"role":"assistant","content":""},"done":true,"eval_count":2}\n'
    )

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, content=body)

    request = ChatRequest(
        model="llama3:latest",
        messages=[{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
        options={"temperature": 0.2},
        suffix="-- end",
    )
    with respx.mock:
        respx.post("http://ollama.test/api/chat").mock(side_effect=handler)
        stream = await provider.open_chat(request)
        fragments = [f async for f in stream]
        await stream.aclose()

    assert captured["model"] == "llama3:latest"
    assert captured["stream"] is True
    assert captured["options"] == {"temperature": 0.2}
    assert captured["suffix"] == "-- end"
    assert captured["messages"][0] == {"role": "system", "content": "be brief"}
    assert "".join(f.content for f in fragments) == "Hello world"
    assert fragments[-1].done is True
    assert stream.dropped == 0
    await provider.close()


def test_ollama_payload_omits_empty_options_and_suffix():
    provider = OllamaProvider(Transport("http://ollama.test"))
    payload = provider.build_payload(ChatRequest(model="m", messages=[{"role": "user", "content": "x"}]))
    assert "options" not in payload
    assert "suffix" not in payload


@pytest.mark.asyncio
async def test_openai_compatible_stream_and_payload_mapping():
    transport = Transport("https://api.cloud.test/v1", headers={"Authorization": "Bearer k"})
    provider = OpenAICompatibleProvider("cloud", transport, models=["big"])
    captured = {}
    body = (
        b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
        b'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n\n'
        b"data: [DONE]\n\n"
    )

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("authorization")
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, content=body)

    request = ChatRequest(
        model="big",
        messages=[{"role": "user", "content": "hello"}],
        options={"temperature": 0.3, "num_predict": 64, "top_k": 10},
        suffix="tail",
    )
    with respx.mock:
        respx.post("https://api.cloud.test/v1/chat/completions").mock(side_effect=handler)
        stream = await provider.open_chat(request)
        fragments = []
        async for fragment in stream:
            fragments.append(fragment)
            if fragment.done:
                break
        await stream.aclose()

    payload = captured["payload"]
    assert captured["auth"] == "Bearer k"
    assert payload["temperature"] == 0.3
    assert payload["max_tokens"] == 64
    assert "top_k" not in payload
    assert payload["messages"][-1]["content"] == "hello\n\ntail"
    assert "".join(f.content for f in fragments) == "Hi"
    assert fragments[-1].done is True
    assert await provider.list_models() == ["big"]
    await provider.close()


@pytest.mark.asyncio
async def test_openai_compatible_lists_remote_models_without_config():
    provider = OpenAICompatibleProvider("cloud", Transport("https://api.cloud.test/v1"))
    with respx.mock:
        respx.get("https://api.cloud.test/v1/models").mock(
            return_value=httpx.Response(200, json={"data": [{"id": "a"}, {"id": "b"}]})
        )
        assert await provider.list_models() == ["a", "b"]
    await provider.close()


@pytest.mark.asyncio
async def test_build_providers_registers_cloud_entries():
    settings = AppSettings(
        cloud_providers={
            "cloud": CloudProviderConfig(base_url="https://api.cloud.test/v1", api_key="k", models=["big"]),
            "local": CloudProviderConfig(base_url="https://ignored.test"),
        }
    )
    providers = build_providers(settings)
    assert set(providers) == {"local", "cloud"}
    assert isinstance(providers["local"], OllamaProvider)
    for provider in providers.values():
        await provider.close()
