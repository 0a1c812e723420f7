import httpx
import pytest
import respx

from parley.errors import ServerConnectionError
from parley.transport import Transport


@pytest.mark.asyncio
async def test_request_json_returns_payload():
    transport = Transport("http://ollama.test/")
    with respx.mock:
        respx.get("http://ollama.test/api/tags").mock(
            return_value=httpx.Response(200, json={"models": [{"name": "llama3:latest"}]})
        )
        data = await transport.request_json("GET", "/api/tags")
    assert data["models"][0]["name"] == "llama3:latest"
    await transport.close()


@pytest.mark.asyncio
async def test_request_json_http_error_carries_status_and_detail():
    transport = Transport("http://ollama.test")
    with respx.mock:
        respx.get("http://ollama.test/api/tags").mock(return_value=httpx.Response(500, json={"error": "boom"}))
        with pytest.raises(ServerConnectionError) as excinfo:
            await transport.request_json("GET", "/api/tags")
    assert excinfo.value.status_code == 500
    assert "boom" in str(excinfo.value)
    await transport.close()


@pytest.mark.asyncio
async def test_request_json_connect_error_is_wrapped():
    transport = Transport("http://ollama.test")
    with respx.mock:
        respx.get("http://ollama.test/api/tags").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ServerConnectionError) as excinfo:
            await transport.request_json("GET", "/api/tags")
    assert excinfo.value.status_code is None
    await transport.close()


@pytest.mark.asyncio
async def test_open_streams_text_and_close_is_idempotent():
    transport = Transport("http://ollama.test")
    body = b'{"message":{"content":"a"}}\n{"message":{"content":"b"},"done":true}\n'
    with respx.mock:
        respx.post("http://ollama.test/api/chat").mock(return_value=httpx.Response(200, content=body))
        handle = await transport.open("POST", "/api/chat", {"model": "m"})
        text = "".join([chunk async for chunk in handle.chunks()])
        await handle.close()
        await handle.close()
    assert text == body.decode("utf-8")
    assert handle.closed
    assert [chunk async for chunk in handle.chunks()] == []
    await transport.close()


@pytest.mark.asyncio
async def test_open_error_status_raises_with_detail():
    transport = Transport("http://ollama.test")
    with respx.mock:
        respx.post("http://ollama.test/api/chat").mock(
            return_value=httpx.Response(404, json={"error": "model 'ghost' not found"})
        )
        with pytest.raises(ServerConnectionError) as excinfo:
            await transport.open("POST", "/api/chat", {"model": "ghost"})
    assert excinfo.value.status_code == 404
    assert "ghost" in str(excinfo.value)
    await transport.close()


@pytest.mark.asyncio
async def test_transport_does_not_close_borrowed_client():
    client = httpx.AsyncClient()
    transport = Transport("http://ollama.test", client=client)
    await transport.close()
    assert not client.is_closed
    await client.aclose()
