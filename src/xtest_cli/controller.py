"""
Session Controller

擁有本地與雲端兩個瀏覽器 Session 及唯一的控制通道：
- 依 TargetSelector 將操作分派到 local / remote / both
- 處理控制通道推送的指令與事件
- 控制通道重連失敗時終止 Session
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from xtest_cli.base.adapter import BrowserAdapter
from xtest_cli.config import Config
from xtest_cli.local import LocalDriverAdapter
from xtest_cli.mirroring import MirrorEngine
from xtest_cli.protocol import ChannelMessage, CommandMessage, EventMessage, StatusMessage, result_message
from xtest_cli.remote import ControlChannel, RemoteSessionAdapter
from xtest_cli.schemas import (
    Command,
    CommandResult,
    CommandType,
    FanOutResult,
    NotReady,
    SessionKind,
    TargetSelector,
    XtestError,
)
from xtest_cli.utils import timestamp_ms

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], Any]


# ═══════════════════════════════════════════════════════════════════════════════
# 狀態
# ═══════════════════════════════════════════════════════════════════════════════
class ControllerState(Enum):
    """Session Controller 狀態"""

    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"


class SessionState(Enum):
    """單一瀏覽器 Session 狀態"""

    STARTING = "starting"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


_SESSION_TRANSITIONS: dict[SessionState, SessionState] = {
    SessionState.STARTING: SessionState.READY,
    SessionState.READY: SessionState.CLOSING,
    SessionState.CLOSING: SessionState.CLOSED,
}


@dataclass
class Session:
    """
    瀏覽器 Session

    Attributes:
        id: Session ID（雲端 Session 使用伺服器回傳的 ID）
        kind: 本地或雲端
        adapter: 執行指令的 Adapter
        state: 目前狀態
    """

    id: str
    kind: SessionKind
    adapter: BrowserAdapter
    state: SessionState = SessionState.STARTING

    def transition(self, new_state: SessionState) -> None:
        if _SESSION_TRANSITIONS.get(self.state) is not new_state:
            raise RuntimeError(f"不合法的 Session 狀態轉移: {self.state.value} → {new_state.value}")
        self.state = new_state


# ═══════════════════════════════════════════════════════════════════════════════
# Session Controller
# ═══════════════════════════════════════════════════════════════════════════════
class SessionController:
    """
    Session Controller

    使用方式：
        async with SessionController(config, TargetSelector.BOTH) as controller:
            result = await controller.navigate("both", "https://example.com")
    """

    def __init__(
        self,
        config: Config,
        targets: TargetSelector | str = TargetSelector.LOCAL,
        mirror: bool = False,
        *,
        local_adapter: BrowserAdapter | None = None,
        remote_adapter: BrowserAdapter | None = None,
        channel: ControlChannel | None = None,
    ):
        self._config = config
        self.targets = TargetSelector.parse(targets)
        self.mirror_enabled = mirror
        if mirror and self.targets is not TargetSelector.BOTH:
            raise ValueError("鏡像模式需要同時啟動本地與雲端瀏覽器（targets=both）")

        self._local_adapter = local_adapter
        self._remote_adapter = remote_adapter
        self.channel = channel or ControlChannel.from_config(config, mode=self._channel_mode())

        self.sessions: dict[SessionKind, Session] = {}
        self.mirror: MirrorEngine | None = None
        self.fatal_error: BaseException | None = None

        self._state = ControllerState.IDLE
        self._stopped = asyncio.Event()
        self._stop_task: asyncio.Task | None = None
        self._listeners: list[Listener] = []

    def _channel_mode(self) -> str | None:
        if self.mirror_enabled:
            return "mirror"
        if self.targets is TargetSelector.BOTH:
            return "dual-control"
        return None

    @property
    def state(self) -> ControllerState:
        return self._state

    async def __aenter__(self) -> "SessionController":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    # ═══════════════════════════════════════════════════════════════════════════════
    # 事件監聽
    # ═══════════════════════════════════════════════════════════════════════════════

    def add_listener(self, listener: Listener) -> None:
        """
        註冊事件監聽器

        listener(event, payload) 可為同步或非同步函數，事件包含：
        channel_open、status、remote_event、fatal
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event: str, payload: Any = None) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"事件監聽器執行失敗 ({event}): {e}")

    # ═══════════════════════════════════════════════════════════════════════════════
    # 生命週期
    # ═══════════════════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """
        啟動瀏覽器 Session 並開啟控制通道

        Raises:
            NotReady: 非 idle 狀態，或啟動期間被 stop() 中止
            DriverError: 本地瀏覽器無法啟動
            RemoteApiError / RemoteApiUnreachable: 雲端 Session 無法建立
        """
        if self._state is not ControllerState.IDLE:
            raise NotReady(f"Session Controller 狀態為 {self._state.value}，無法啟動")
        self._state = ControllerState.STARTING
        logger.info(f"🚀 正在啟動 Session: {self._config.session_id} (targets={self.targets.value})")

        try:
            if self.targets.includes(SessionKind.LOCAL):
                await self._start_session(SessionKind.LOCAL, self._local_adapter or LocalDriverAdapter(self._config))
            if self.targets.includes(SessionKind.REMOTE):
                await self._start_session(
                    SessionKind.REMOTE, self._remote_adapter or RemoteSessionAdapter(self._config)
                )

            self.channel.set_message_handler(self._handle_message)
            self.channel.on_open(self._on_channel_open)
            self.channel.on_failed(self._on_channel_failed)

            if self.mirror_enabled:
                self.mirror = MirrorEngine(
                    self.sessions[SessionKind.LOCAL].adapter,
                    self.sessions[SessionKind.REMOTE].adapter,
                    is_open=lambda: self.channel.is_open,
                )
                await self.mirror.start()
                self._ensure_starting()
        except BaseException as e:
            logger.error(f"❌ Session 啟動失敗: {e}")
            # 啟動期間被 stop() 接手時，清理已由 stop() 完成
            if self._state is ControllerState.STARTING:
                await self._teardown()
                self._state = ControllerState.STOPPED
                self._stopped.set()
            raise

        self._state = ControllerState.READY
        await self.channel.open()
        logger.info("✅ Session 已就緒")

    def _ensure_starting(self) -> None:
        if self._state is not ControllerState.STARTING:
            raise NotReady(f"Session Controller 在啟動期間被停止（{self._state.value}）")

    async def _start_session(self, kind: SessionKind, adapter: BrowserAdapter) -> None:
        session = Session(id=f"{kind.value}-{self._config.session_id}", kind=kind, adapter=adapter)
        self.sessions[kind] = session
        try:
            await adapter.start()
        except BaseException:
            # 啟動失敗的 Adapter 自行清理，不列入 Session
            del self.sessions[kind]
            raise

        session.id = getattr(adapter, "server_session_id", None) or session.id
        session.transition(SessionState.READY)
        if self._state is not ControllerState.STARTING:
            await self._close_session(session)
            self._ensure_starting()

    async def stop(self) -> None:
        """
        停止所有 Session

        順序：鏡像 → 控制通道 → 雲端 Session → 本地瀏覽器。
        關閉錯誤只記錄不拋出；重複呼叫不會再次關閉。
        """
        if self._state is ControllerState.STOPPED:
            return
        if self._state is ControllerState.STOPPING:
            await self._stopped.wait()
            return

        self._state = ControllerState.STOPPING
        logger.info("🛑 正在停止 Session...")
        try:
            await self._teardown()
        finally:
            self._state = ControllerState.STOPPED
            self._stopped.set()
        logger.info("👋 Session 已停止")

    async def _teardown(self) -> None:
        if self.mirror is not None:
            await self.mirror.stop()
            self.mirror = None

        await self.channel.close()

        for kind in (SessionKind.REMOTE, SessionKind.LOCAL):
            session = self.sessions.get(kind)
            if session is not None:
                await self._close_session(session)

    async def _close_session(self, session: Session) -> None:
        """關閉單一 Session（只處理 ready 狀態，錯誤只記錄）"""
        if session.state is not SessionState.READY:
            return
        session.transition(SessionState.CLOSING)
        try:
            await session.adapter.close()
        except Exception as e:
            logger.warning(f"關閉 {session.kind.value} Session 失敗: {e}")
        session.transition(SessionState.CLOSED)

    async def wait_stopped(self) -> None:
        """等待 Session 停止（包含致命錯誤導致的停止）"""
        await self._stopped.wait()

    # ═══════════════════════════════════════════════════════════════════════════════
    # 控制通道事件
    # ═══════════════════════════════════════════════════════════════════════════════

    def status_payload(self) -> dict[str, Any]:
        """連線後送出的 status 訊息內容"""
        data: dict[str, Any] = {
            "browser": self._config.browser_type,
            "mode": self._config.mode,
            "ready": self._state is ControllerState.READY,
            "sessionId": self._config.session_id,
        }
        remote = self.sessions.get(SessionKind.REMOTE)
        if remote is not None:
            data["serverSessionId"] = remote.id
        if self.mirror_enabled:
            data["mirroring"] = True
        return data

    async def _on_channel_open(self) -> None:
        await self.channel.send(StatusMessage(data=self.status_payload()))
        await self._emit("channel_open")

    async def _on_channel_failed(self, error: BaseException) -> None:
        self.fatal_error = error
        logger.error(f"💥 控制通道無法恢復，終止 Session: {error}")
        await self._emit("fatal", error)
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop(), name="session-stop")

    async def _handle_message(self, message: ChannelMessage) -> None:
        if isinstance(message, CommandMessage):
            await self._handle_command(message.command)
        elif isinstance(message, EventMessage):
            remote = self.sessions.get(SessionKind.REMOTE)
            if remote is not None and isinstance(remote.adapter, RemoteSessionAdapter):
                remote.adapter.publish_remote_event(message.event)
            await self._emit("remote_event", message.event)
        elif isinstance(message, StatusMessage):
            logger.info(f"📊 伺服器狀態: {message.data}")
            await self._emit("status", message.data)
        else:
            logger.warning(f"未處理的訊息類型: {type(message).__name__}")

    async def _handle_command(self, command: Command) -> None:
        """執行伺服器推送的指令並回傳結果"""
        target = command.target or TargetSelector.LOCAL
        logger.info(f"📥 收到指令: {command.type.value} → {target.value} (id: {command.id})")

        if self._state is not ControllerState.READY:
            result = CommandResult.failure(command.id, NotReady(f"Session 狀態為 {self._state.value}"))
        else:
            fan_out = await self._dispatch({kind: command for kind in target.kinds})
            result = self._merge(command.id, target, fan_out)

        if result.success:
            logger.info(f"📤 指令執行成功: {command.type.value}")
        else:
            logger.warning(f"📤 指令執行失敗: {command.type.value} - {result.error}")
        await self.channel.send(result_message(result))

    @staticmethod
    def _merge(command_id: str, target: TargetSelector, fan_out: FanOutResult) -> CommandResult:
        """將多目標結果合併為單一回應"""
        if target is not TargetSelector.BOTH:
            result = fan_out.get(target.kinds[0])
            return result if result is not None else CommandResult.failure(command_id, f"{target.value} 沒有執行結果")
        if fan_out.success:
            return CommandResult.ok(command_id, fan_out.to_dict())
        errors = []
        for kind in SessionKind:
            side = fan_out.get(kind)
            if side is not None and not side.success:
                errors.append(f"{kind.value}: {side.error}")
        return CommandResult.failure(command_id, "; ".join(errors))

    # ═══════════════════════════════════════════════════════════════════════════════
    # 分派
    # ═══════════════════════════════════════════════════════════════════════════════

    def _require_ready(self) -> None:
        if self._state is not ControllerState.READY:
            raise NotReady(f"Session Controller 狀態為 {self._state.value}，無法執行操作")

    async def _fan_out(
        self,
        target: TargetSelector | str,
        command_type: CommandType,
        params: dict[str, Any] | None = None,
        params_for: Callable[[SessionKind], dict[str, Any]] | None = None,
    ) -> FanOutResult:
        self._require_ready()
        selector = TargetSelector.parse(target)
        commands = {
            kind: Command(command_type, params_for(kind) if params_for else dict(params or {}), target=selector)
            for kind in selector.kinds
        }
        return await self._dispatch(commands)

    async def _dispatch(self, commands: dict[SessionKind, Command]) -> FanOutResult:
        """並行執行各端指令，一端失敗不影響另一端"""
        kinds = list(commands)
        results = await asyncio.gather(*(self._execute_on(kind, commands[kind]) for kind in kinds))
        return FanOutResult(**{kind.value: result for kind, result in zip(kinds, results)})

    async def _execute_on(self, kind: SessionKind, command: Command) -> CommandResult:
        session = self.sessions.get(kind)
        if session is None or session.state is not SessionState.READY:
            return CommandResult.failure(command.id, f"{kind.value} Session 未啟動")
        try:
            return await session.adapter.execute(command)
        except XtestError as e:
            logger.warning(f"[{kind.value}] {command.type.value} 失敗: {e}")
            return CommandResult.failure(command.id, e)
        except Exception as e:
            logger.exception(f"[{kind.value}] {command.type.value} 發生未預期錯誤: {e}")
            return CommandResult.failure(command.id, e)

    # ═══════════════════════════════════════════════════════════════════════════════
    # 瀏覽器操作
    # ═══════════════════════════════════════════════════════════════════════════════

    async def navigate(self, target: TargetSelector | str, url: str) -> FanOutResult:
        return await self._fan_out(target, CommandType.NAVIGATE, {"url": url})

    async def click(self, target: TargetSelector | str, selector: str) -> FanOutResult:
        return await self._fan_out(target, CommandType.CLICK, {"selector": selector})

    async def type(self, target: TargetSelector | str, selector: str, text: str) -> FanOutResult:
        return await self._fan_out(target, CommandType.TYPE, {"selector": selector, "text": text})

    async def screenshot(
        self,
        target: TargetSelector | str,
        filename: str | None = None,
        full_page: bool = False,
    ) -> FanOutResult:
        """
        截圖

        檔名加上 local- / remote- 前綴；未指定時為 <kind>-screenshot-<毫秒時間戳>.png
        """
        Path(self._config.screenshot_dir).mkdir(parents=True, exist_ok=True)
        return await self._fan_out(
            target,
            CommandType.SCREENSHOT,
            params_for=lambda kind: {"path": self.screenshot_path(kind, filename), "fullPage": full_page},
        )

    def screenshot_path(self, kind: SessionKind, filename: str | None = None) -> str:
        name = f"{kind.value}-{filename}" if filename else f"{kind.value}-screenshot-{timestamp_ms()}.png"
        return str(Path(self._config.screenshot_dir) / name)

    async def evaluate(self, target: TargetSelector | str, script: str) -> FanOutResult:
        return await self._fan_out(target, CommandType.EVALUATE, {"script": script})

    async def get_page_info(self, target: TargetSelector | str) -> FanOutResult:
        """取得目前頁面的 URL 與標題"""
        return await self._fan_out(target, CommandType.PAGE_INFO)

    async def wait_for_selector(
        self,
        target: TargetSelector | str,
        selector: str,
        options: dict[str, Any] | None = None,
    ) -> FanOutResult:
        """等待元素出現，options 可包含 timeout（毫秒）與 state"""
        return await self._fan_out(target, CommandType.WAIT_FOR_SELECTOR, {"selector": selector, **(options or {})})

    async def select(self, target: TargetSelector | str, selector: str, value: str) -> FanOutResult:
        return await self._fan_out(target, CommandType.SELECT, {"selector": selector, "value": value})

    async def press(self, target: TargetSelector | str, selector: str, key: str) -> FanOutResult:
        return await self._fan_out(target, CommandType.PRESS, {"selector": selector, "key": key})
