"""
控制通道

與雲端服務維持一條持久的 WebSocket 連線：認證、收發協定訊息，
斷線後以指數退避自動重連，重試次數用盡後回報致命錯誤。
"""

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from xtest_cli import __version__, protocol
from xtest_cli.config import Config
from xtest_cli.protocol import ChannelMessage, CommandMessage, ErrorMessage, ResponseMessage, UnknownMessage
from xtest_cli.schemas import ChannelReconnectExhausted, Command, CommandLost, CommandResult, MalformedMessage
from xtest_cli.utils import truncate_string

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ChannelMessage], Awaitable[None]]
Callback = Callable[..., Any]


class ChannelState(Enum):
    """控制通道狀態"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# 合法的狀態轉移（close() 可從任何狀態回到 DISCONNECTED）
_TRANSITIONS: dict[ChannelState, set[ChannelState]] = {
    ChannelState.DISCONNECTED: {ChannelState.CONNECTING},
    ChannelState.CONNECTING: {ChannelState.OPEN, ChannelState.RECONNECTING},
    ChannelState.OPEN: {ChannelState.RECONNECTING},
    ChannelState.RECONNECTING: {ChannelState.CONNECTING, ChannelState.FAILED},
    ChannelState.FAILED: set(),
}


def ws_url(server_url: str, path: str = "/cli/connect") -> str:
    """
    將伺服器位址轉為 WebSocket 位址

    http → ws、https → wss，並加上固定子路徑。
    """
    if server_url.startswith("https://"):
        base = "wss://" + server_url[len("https://"):]
    elif server_url.startswith("http://"):
        base = "ws://" + server_url[len("http://"):]
    elif server_url.startswith(("ws://", "wss://")):
        base = server_url
    else:
        raise ValueError(f"不支援的伺服器位址: {server_url}")
    return base.rstrip("/") + path


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """第 attempt 次重連前的等待時間：min(base × 2^attempt, cap)"""
    return min(base * (2 ** attempt), cap)


class ControlChannel:
    """
    控制通道

    單一背景任務負責連線、接收與重連，狀態轉移只在該任務（與 close()）中發生。
    """

    def __init__(
        self,
        server_url: str,
        api_key: str,
        session_id: str,
        *,
        path: str = "/cli/connect",
        mode: str | None = None,
        client_version: str = __version__,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
        heartbeat_interval: float | None = 30.0,
        command_timeout: float = 30.0,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = ws_url(server_url, path)
        self.session_id = session_id
        self._api_key = api_key
        self._mode = mode
        self._client_version = client_version
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._heartbeat_interval = heartbeat_interval
        self._command_timeout = command_timeout
        self._connect = connect
        self._sleep = sleep

        self._state = ChannelState.DISCONNECTED
        self._attempt = 0
        self._websocket: Any = None
        self._task: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()
        self._opened = asyncio.Event()
        self._pending: dict[str, asyncio.Future] = {}
        self._handler_tasks: set[asyncio.Task] = set()

        self._message_handler: MessageHandler | None = None
        self._open_callbacks: list[Callback] = []
        self._close_callbacks: list[Callback] = []
        self._failed_callbacks: list[Callback] = []

        self.last_error: BaseException | None = None
        # 重連次數用盡後不可再開啟（close() 之後仍然成立）
        self._exhausted = False

    @classmethod
    def from_config(cls, config: Config, mode: str | None = None) -> "ControlChannel":
        """依配置建立控制通道"""
        return cls(
            server_url=config.server_url,
            api_key=config.api_key,
            session_id=config.session_id,
            path=config.channel_path,
            mode=mode,
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            max_attempts=config.max_reconnect_attempts,
            heartbeat_interval=config.heartbeat_interval,
            command_timeout=config.command_timeout,
        )

    # ═══════════════════════════════════════════════════════════════════════════════
    # 狀態
    # ═══════════════════════════════════════════════════════════════════════════════

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def attempt(self) -> int:
        """目前的重連計數（連線成功後歸零）"""
        return self._attempt

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    @property
    def headers(self) -> dict[str, str]:
        """握手時帶上的識別標頭"""
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "X-Session-ID": self.session_id,
            "X-CLI-Version": self._client_version,
        }
        if self._mode:
            headers["X-Mode"] = self._mode
        return headers

    def backoff_delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self._base_delay, self._max_delay)

    def _transition(self, new_state: ChannelState) -> None:
        if new_state is not ChannelState.DISCONNECTED and new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"不合法的控制通道狀態轉移: {self._state.value} → {new_state.value}")
        logger.debug(f"控制通道狀態: {self._state.value} → {new_state.value}")
        self._state = new_state

    # ═══════════════════════════════════════════════════════════════════════════════
    # 事件註冊
    # ═══════════════════════════════════════════════════════════════════════════════

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        """設定入站訊息處理器（response / error 由通道自行對應，不會送到這裡）"""
        self._message_handler = handler

    def on_open(self, callback: Callback) -> None:
        self._open_callbacks.append(callback)

    def on_close(self, callback: Callback) -> None:
        self._close_callbacks.append(callback)

    def on_failed(self, callback: Callback) -> None:
        """重連次數用盡時呼叫，參數為 ChannelReconnectExhausted"""
        self._failed_callbacks.append(callback)

    async def _fire(self, callbacks: list[Callback], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"控制通道回呼執行失敗: {e}")

    # ═══════════════════════════════════════════════════════════════════════════════
    # 連線
    # ═══════════════════════════════════════════════════════════════════════════════

    async def open(self) -> None:
        """
        開始連線（非同步進行，成功後觸發 on_open）

        Raises:
            ChannelReconnectExhausted: 通道曾因重連次數用盡而失效（即使已 close()）
        """
        if self._task is not None and not self._task.done():
            logger.warning("控制通道已在運行中")
            return
        if self._exhausted:
            raise ChannelReconnectExhausted("控制通道已失效，請重新建立 Session")

        self._attempt = 0
        self._task = asyncio.create_task(self._run(), name=f"control-channel-{self.session_id}")

    async def wait_open(self, timeout: float | None = None) -> bool:
        """等待連線成功（或通道失效），回傳是否已連線"""
        if self._state is ChannelState.OPEN:
            return True
        if self._task is None:
            return False

        waiter = asyncio.ensure_future(self._opened.wait())
        try:
            await asyncio.wait({waiter, self._task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        return self._state is ChannelState.OPEN

    async def _run(self) -> None:
        """連線、接收、重連的主迴圈"""
        while True:
            self._transition(ChannelState.CONNECTING)
            logger.info(f"🔗 正在連接控制通道: {self.url}")
            try:
                websocket = await self._connect(
                    self.url,
                    additional_headers=self.headers,
                    ping_interval=self._heartbeat_interval,
                    ping_timeout=10,
                )
            except Exception as e:
                self.last_error = e
                logger.warning(f"🔴 無法連接控制通道: {e}")
            else:
                self._websocket = websocket
                self._transition(ChannelState.OPEN)
                self._attempt = 0
                self._opened.set()
                logger.info("✅ 控制通道已連線")
                await self._fire(self._open_callbacks)

                await self._receive_loop(websocket)

                self._websocket = None
                self._opened.clear()
                self._fail_pending(CommandLost("控制通道已中斷，指令結果遺失"))
                await self._fire(self._close_callbacks)

            self._transition(ChannelState.RECONNECTING)
            if self._attempt >= self._max_attempts:
                self._transition(ChannelState.FAILED)
                self._exhausted = True
                error = ChannelReconnectExhausted(f"控制通道重連 {self._max_attempts} 次仍失敗")
                self.last_error = error
                logger.error(f"❌ {error}")
                await self._fire(self._failed_callbacks, error)
                return

            delay = self.backoff_delay(self._attempt)
            self._attempt += 1
            logger.warning(f"{delay:.1f} 秒後重新連線...（第 {self._attempt}/{self._max_attempts} 次）")
            await self._sleep(delay)

    async def _receive_loop(self, websocket: Any) -> None:
        try:
            async for raw in websocket:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.warning(f"🔴 控制通道連線中斷: {e}")
        else:
            logger.warning("🔴 控制通道已被遠端關閉")

    # ═══════════════════════════════════════════════════════════════════════════════
    # 入站訊息
    # ═══════════════════════════════════════════════════════════════════════════════

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = protocol.decode(raw)
        except MalformedMessage as e:
            logger.warning(f"丟棄無法解析的訊息: {e} | {truncate_string(str(raw))}")
            return

        if isinstance(message, (ResponseMessage, ErrorMessage)):
            if not self._resolve(message):
                logger.warning(f"收到未知指令的回應: commandId={message.command_id}")
            return

        if isinstance(message, UnknownMessage):
            logger.warning(f"未知訊息類型: {message.type}")
            return

        handler = self._message_handler
        if handler is None:
            logger.debug(f"未設定訊息處理器，忽略訊息: {type(message).__name__}")
            return

        task = asyncio.create_task(self._handle(handler, message))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _handle(self, handler: MessageHandler, message: ChannelMessage) -> None:
        try:
            await handler(message)
        except Exception as e:
            logger.exception(f"處理訊息錯誤: {e}")

    def _resolve(self, message: ResponseMessage | ErrorMessage) -> bool:
        future = self._pending.get(message.command_id)
        if future is None:
            return False
        if not future.done():
            if isinstance(message, ResponseMessage):
                future.set_result(CommandResult.ok(message.command_id, message.data))
            else:
                future.set_result(CommandResult.failure(message.command_id, message.error))
        return True

    def _fail_pending(self, error: CommandLost) -> None:
        for command_id, future in list(self._pending.items()):
            if not future.done():
                logger.warning(f"指令結果遺失: commandId={command_id}")
                future.set_exception(error)

    # ═══════════════════════════════════════════════════════════════════════════════
    # 出站訊息
    # ═══════════════════════════════════════════════════════════════════════════════

    async def send(self, message: ChannelMessage) -> bool:
        """
        傳送協定訊息

        只在 open 狀態下傳送，否則記錄後丟棄（斷線期間不緩衝）。

        Returns:
            是否已交給傳輸層
        """
        text = protocol.encode(message)
        async with self._send_lock:
            if self._state is not ChannelState.OPEN or self._websocket is None:
                logger.warning(f"控制通道未連線（{self._state.value}），丟棄訊息: {truncate_string(text)}")
                return False
            try:
                await self._websocket.send(text)
            except ConnectionClosed as e:
                logger.warning(f"傳送失敗，連線已中斷: {e}")
                return False
        return True

    async def request(self, command: Command, timeout: float | None = None) -> CommandResult:
        """
        傳送指令並等待對應的 response / error

        Args:
            command: 指令（ID 在本次連線內必須唯一）
            timeout: 逾時時間（秒），預設為 command_timeout

        Returns:
            對應的 CommandResult

        Raises:
            CommandLost: 通道未連線或在回應前中斷
            asyncio.TimeoutError: 等待逾時
        """
        if command.id in self._pending:
            raise ValueError(f"指令 ID 重複: {command.id}")
        if self._state is not ChannelState.OPEN:
            raise CommandLost(f"控制通道未連線（{self._state.value}）")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[command.id] = future
        try:
            if not await self.send(CommandMessage(command)):
                raise CommandLost("指令未送出，控制通道已中斷")
            logger.debug(f"發送指令: {command.type.value}, id={command.id}")
            return await asyncio.wait_for(future, timeout or self._command_timeout)
        except asyncio.TimeoutError:
            logger.error(f"指令逾時: {command.type.value}, id={command.id}")
            raise
        finally:
            self._pending.pop(command.id, None)

    # ═══════════════════════════════════════════════════════════════════════════════
    # 關閉
    # ═══════════════════════════════════════════════════════════════════════════════

    async def close(self) -> None:
        """關閉通道並取消等待中的重連"""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"關閉 WebSocket 時發生錯誤: {e}")

        self._opened.clear()
        self._fail_pending(CommandLost("控制通道已關閉"))
        if self._state is not ChannelState.DISCONNECTED:
            self._transition(ChannelState.DISCONNECTED)
            logger.info("🛑 控制通道已關閉")
