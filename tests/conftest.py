"""
共用測試工具

記憶體內的 WebSocket、可編排結果的連線工廠、假的瀏覽器 Adapter 等。
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections import deque
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from xtest_cli.base.adapter import BrowserAdapter
from xtest_cli.config import Config
from xtest_cli.remote.api_client import RemoteSessionApi
from xtest_cli.schemas import Command, CommandType, MirrorEvent, MirrorEventKind, SessionKind

_CLOSE = object()


class FakeWebSocket:
    """記憶體內的 WebSocket 連線：push() 模擬伺服器訊息，sent 記錄送出的文字"""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()

    def push(self, payload: dict[str, Any] | str) -> None:
        self._inbound.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self) -> None:
        """模擬遠端關閉連線"""
        self._inbound.put_nowait(_CLOSE)

    def sent_json(self) -> list[dict[str, Any]]:
        return [json.loads(text) for text in self.sent]

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        self._inbound.put_nowait(_CLOSE)

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> str:
        item = await self._inbound.get()
        if item is _CLOSE:
            self.closed = True
            raise StopAsyncIteration
        return item


class FakeConnector:
    """取代 websockets.connect：依序回傳 WebSocket 或拋出例外，用完後一律連線失敗"""

    def __init__(self, *outcomes: FakeWebSocket | BaseException) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append((url, kwargs))
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class SleepRecorder:
    """取代 asyncio.sleep：記錄等待時間但不真的等待"""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeAdapter(BrowserAdapter):
    """
    假的瀏覽器 Adapter

    navigate 會像真的瀏覽器一樣發出導航事件；failures 中的例外會依序在 execute 時拋出。
    """

    def __init__(self, kind: SessionKind, log: list[str] | None = None) -> None:
        super().__init__()
        self.kind = kind
        self.executed: list[Command] = []
        self.failures: deque[BaseException] = deque()
        self.start_error: BaseException | None = None
        self.start_delay = 0.0
        self.start_calls = 0
        self.close_calls = 0
        self._log = log if log is not None else []

    async def start(self) -> None:
        self.start_calls += 1
        self._log.append(f"start:{self.kind.value}")
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error

    async def _execute(self, command: Command) -> Any:
        self.executed.append(command)
        if self.failures:
            raise self.failures.popleft()
        if command.type is CommandType.NAVIGATE:
            url = command.params["url"]
            self._publish(MirrorEvent(MirrorEventKind.NAVIGATION, url=url))
            return {"url": url}
        return {"success": True}

    async def close(self) -> None:
        self.close_calls += 1
        self._log.append(f"close:{self.kind.value}")

    def emit(self, event: MirrorEvent) -> None:
        """模擬使用者在瀏覽器上的操作"""
        self._publish(event)


class EventCollector:
    """在背景訂閱 Adapter 的事件"""

    def __init__(self, adapter: BrowserAdapter) -> None:
        self.events: list[MirrorEvent] = []
        self._adapter = adapter
        self._task: asyncio.Task | None = None

    async def __aenter__(self) -> EventCollector:
        self._task = asyncio.create_task(self._run())
        await asyncio.sleep(0)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        assert self._task is not None
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    async def _run(self) -> None:
        async for event in self._adapter.observe():
            self.events.append(event)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """等待條件成立，逾時則測試失敗"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待條件逾時")
        await asyncio.sleep(0.005)


class RecordingApi:
    """以 httpx.MockTransport 模擬遠端 Session API，記錄收到的請求"""

    def __init__(self, routes: dict[tuple[str, str], Any] | None = None) -> None:
        self.routes = routes or {}
        self.requests: list[tuple[str, str, dict[str, Any]]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/enhanced-browser")
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.method, path, body))

        route = self.routes.get((request.method, path))
        if isinstance(route, BaseException):
            raise route
        if isinstance(route, httpx.Response):
            return route
        if callable(route):
            return route(request)
        if route is not None:
            return httpx.Response(200, json=route)
        if path == "/create-session":
            return httpx.Response(200, json={"success": True, "sessionId": body.get("sessionId")})
        if path == "/navigate":
            return httpx.Response(200, json={"success": True, "url": body.get("url")})
        return httpx.Response(200, json={"success": True, "result": {"success": True}})

    def paths(self) -> list[tuple[str, str]]:
        return [(method, path) for method, path, _ in self.requests]

    def client(self, base_url: str = "http://xtest.local") -> RemoteSessionApi:
        return RemoteSessionApi(base_url, "test-key", transport=httpx.MockTransport(self))


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        server_url="http://xtest.local",
        api_key="test-key",
        session_id="cli-test",
        reconnect_base_delay=1.0,
        reconnect_max_delay=30.0,
        max_reconnect_attempts=3,
        screenshot_dir=str(tmp_path),
    )
