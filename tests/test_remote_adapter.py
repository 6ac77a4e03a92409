"""
Tests for the remote session API client and adapter.

The HTTP API is served by httpx.MockTransport; every request is recorded.
"""

from __future__ import annotations

import base64
import dataclasses

import httpx
import pytest
from conftest import EventCollector, RecordingApi, wait_until

from xtest_cli.remote.session_adapter import RemoteSessionAdapter
from xtest_cli.schemas import (
    Command,
    CommandType,
    MirrorEvent,
    MirrorEventKind,
    RemoteApiError,
    RemoteApiUnreachable,
)


def make_adapter(config, api: RecordingApi) -> RemoteSessionAdapter:
    return RemoteSessionAdapter(config, api=api.client())


# ═══════════════════════════════════════════════════════════════════════
# 1. HTTP client
# ═══════════════════════════════════════════════════════════════════════


class TestRemoteSessionApi:
    @pytest.mark.asyncio
    async def test_sends_bearer_token_under_api_prefix(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "sessions": [{"sessionId": "s-1"}]})

        api = RecordingApi({("GET", "/sessions"): handler})
        async with api.client() as client:
            sessions = await client.list_sessions()

        assert sessions == [{"sessionId": "s-1"}]
        assert str(seen[0].url) == "http://xtest.local/api/enhanced-browser/sessions"
        assert seen[0].headers["Authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_remote_api_error(self):
        api = RecordingApi({("POST", "/execute"): httpx.Response(500, json={"error": "browser crashed"})})
        async with api.client() as client:
            with pytest.raises(RemoteApiError) as exc_info:
                await client.execute("s-1", "click", {"selector": "#go"})

        assert exc_info.value.status_code == 500
        assert exc_info.value.body == {"error": "browser crashed"}

    @pytest.mark.asyncio
    async def test_plain_text_error_body(self):
        api = RecordingApi({("POST", "/navigate"): httpx.Response(502, text="Bad Gateway")})
        async with api.client() as client:
            with pytest.raises(RemoteApiError) as exc_info:
                await client.navigate("s-1", "https://a.test")

        assert exc_info.value.body == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_success_false_raises_remote_api_error(self):
        api = RecordingApi({("POST", "/execute"): {"success": False, "error": "element not found"}})
        async with api.client() as client:
            with pytest.raises(RemoteApiError, match="element not found"):
                await client.execute("s-1", "click", {"selector": "#missing"})

    @pytest.mark.asyncio
    async def test_connection_failure_raises_unreachable(self):
        api = RecordingApi({("POST", "/navigate"): httpx.ConnectError("connection refused")})
        async with api.client() as client:
            with pytest.raises(RemoteApiUnreachable):
                await client.navigate("s-1", "https://a.test")

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self):
        api = RecordingApi({("DELETE", "/session/s-1"): httpx.Response(204)})
        async with api.client() as client:
            assert await client.delete_session("s-1") == {}


# ═══════════════════════════════════════════════════════════════════════
# 2. Adapter
# ═══════════════════════════════════════════════════════════════════════


class TestRemoteSessionAdapter:
    @pytest.mark.asyncio
    async def test_start_creates_session_and_stream(self, config):
        api = RecordingApi({("POST", "/create-session"): {"success": True, "sessionId": "srv-1"}})
        adapter = make_adapter(config, api)

        await adapter.start()

        assert adapter.server_session_id == "srv-1"
        method, path, body = api.requests[0]
        assert (method, path) == ("POST", "/create-session")
        assert body == {"sessionId": "remote-cli-test", "headless": False, "devtools": False}
        assert api.requests[1] == ("POST", "/start-stream", {"sessionId": "srv-1"})
        await adapter.close()

    @pytest.mark.asyncio
    async def test_stream_failure_is_not_fatal(self, config):
        api = RecordingApi({("POST", "/start-stream"): httpx.Response(503, json={"error": "busy"})})
        adapter = make_adapter(config, api)

        await adapter.start()

        assert adapter.server_session_id == "remote-cli-test"
        await adapter.close()
        assert ("POST", "/stop-stream") not in api.paths()

    @pytest.mark.asyncio
    async def test_start_failure_propagates_and_releases_client(self, config):
        api = RecordingApi({("POST", "/create-session"): httpx.Response(401, json={"error": "invalid key"})})
        adapter = make_adapter(config, api)

        with pytest.raises(RemoteApiError) as exc_info:
            await adapter.start()
        assert exc_info.value.status_code == 401
        assert adapter.server_session_id is None
        assert adapter._api._client is None

    @pytest.mark.asyncio
    async def test_navigate_uses_navigate_endpoint(self, config):
        api = RecordingApi()
        adapter = make_adapter(config, api)
        await adapter.start()

        result = await adapter.execute(Command(CommandType.NAVIGATE, {"url": "https://a.test"}, id="n-1"))

        assert result.command_id == "n-1"
        assert result.data == {"url": "https://a.test"}
        assert ("POST", "/navigate", {"sessionId": "remote-cli-test", "url": "https://a.test"}) in api.requests
        await adapter.close()

    @pytest.mark.asyncio
    async def test_other_commands_use_execute_endpoint(self, config):
        api = RecordingApi({("POST", "/execute"): {"success": True, "result": {"title": "A"}}})
        adapter = make_adapter(config, api)
        await adapter.start()

        result = await adapter.execute(Command(CommandType.PAGE_INFO))
        await adapter.execute(Command(CommandType.CLICK, {"selector": "#go"}))

        assert result.data == {"title": "A"}
        executes = [body for method, path, body in api.requests if path == "/execute"]
        assert executes == [
            {"sessionId": "remote-cli-test", "action": "pageInfo", "params": {}},
            {"sessionId": "remote-cli-test", "action": "click", "params": {"selector": "#go"}},
        ]
        await adapter.close()

    @pytest.mark.asyncio
    async def test_screenshot_is_written_to_path(self, config, tmp_path):
        image = base64.b64encode(b"\x89PNG-remote").decode("ascii")
        api = RecordingApi({("POST", "/screenshot"): {"success": True, "data": image}})
        adapter = make_adapter(config, api)
        await adapter.start()
        path = tmp_path / "remote-shot.png"

        result = await adapter.execute(Command(CommandType.SCREENSHOT, {"path": str(path)}))

        assert path.read_bytes() == b"\x89PNG-remote"
        assert result.data == {"data": image, "path": str(path)}
        assert ("POST", "/screenshot", {"sessionId": "remote-cli-test", "filename": "remote-shot.png"}) in api.requests
        await adapter.close()

    @pytest.mark.asyncio
    async def test_execute_before_start_is_unreachable(self, config):
        adapter = make_adapter(config, RecordingApi())
        with pytest.raises(RemoteApiUnreachable):
            await adapter.execute(Command(CommandType.PAGE_INFO))

    @pytest.mark.asyncio
    async def test_close_stops_stream_and_deletes_session(self, config):
        api = RecordingApi()
        adapter = make_adapter(config, api)
        await adapter.start()

        await adapter.close()

        assert api.paths()[-2:] == [("POST", "/stop-stream"), ("DELETE", "/session/remote-cli-test")]
        assert adapter.server_session_id is None

    @pytest.mark.asyncio
    async def test_delete_failure_raises_but_releases_client(self, config):
        api = RecordingApi({("DELETE", "/session/remote-cli-test"): httpx.Response(404, json={"error": "gone"})})
        client = api.client()
        adapter = RemoteSessionAdapter(dataclasses.replace(config, stream=False), api=client)
        await adapter.start()

        with pytest.raises(RemoteApiError):
            await adapter.close()

        assert adapter.server_session_id is None
        assert client._client is None

    @pytest.mark.asyncio
    async def test_remote_events_come_from_channel_pushes(self, config):
        adapter = make_adapter(config, RecordingApi())

        async with EventCollector(adapter) as collector:
            adapter.publish_remote_event(MirrorEvent(MirrorEventKind.NAVIGATION, url="https://b.test"))
            await wait_until(lambda: len(collector.events) == 1)

        assert collector.events[0].url == "https://b.test"
