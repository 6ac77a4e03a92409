"""
瀏覽器 Adapter 基礎架構

本地瀏覽器與遠端 Session API 共用的執行介面：
execute() 執行指令、observe() 訂閱鏡像事件、close() 釋放資源。
"""

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from xtest_cli.schemas import Command, CommandResult, MirrorEvent, SessionKind, echo_key_for

logger = logging.getLogger(__name__)


class BrowserAdapter(ABC):
    """
    瀏覽器 Adapter 基底類別

    子類別實作 start()、_execute()、close()，
    事件透過 _publish() 推送給所有 observe() 訂閱者。
    """

    kind: SessionKind

    # 鏡像指令執行後，對應事件被視為回音的時間窗（秒）
    ECHO_WINDOW: float = 5.0

    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[MirrorEvent]] = set()
        self._echoes: deque[tuple[tuple[str, str], float]] = deque()

    @abstractmethod
    async def start(self) -> None:
        """啟動 Adapter（啟動瀏覽器或建立遠端 Session）"""

    @abstractmethod
    async def _execute(self, command: Command) -> Any:
        """執行指令並回傳資料，失敗時拋出 DriverError / RemoteApiError / RemoteApiUnreachable"""

    @abstractmethod
    async def close(self) -> None:
        """釋放資源"""

    async def execute(self, command: Command) -> CommandResult:
        """
        執行指令

        鏡像重播的指令會先登記預期的回音事件，避免再次被觀察而形成迴圈。

        Args:
            command: 要執行的指令

        Returns:
            成功的 CommandResult
        """
        echo = self._expect_echo(command) if command.mirrored else None
        try:
            data = await self._execute(command)
        except BaseException:
            if echo is not None:
                self._discard_echo(echo)
            raise
        return CommandResult.ok(command.id, data)

    async def observe(self) -> AsyncIterator[MirrorEvent]:
        """
        訂閱鏡像事件

        每次呼叫都是新的訂閱，第一次迭代時才開始接收；
        無限序列，關閉迭代器即取消訂閱，不會拋出例外。
        """
        queue: asyncio.Queue[MirrorEvent] = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ═══════════════════════════════════════════════════════════════════════════════
    # 事件發布與回音抑制
    # ═══════════════════════════════════════════════════════════════════════════════

    def _publish(self, event: MirrorEvent) -> None:
        """推送事件給所有訂閱者（回音事件會被吸收）"""
        if self._consume_echo(event):
            logger.debug(f"[{self.kind.value}] 忽略鏡像回音: {event.kind.value} {event.echo_key[1]}")
            return
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def _expect_echo(self, command: Command) -> tuple[tuple[str, str], float] | None:
        key = echo_key_for(command)
        if key is None:
            return None
        entry = (key, time.monotonic() + self.ECHO_WINDOW)
        self._echoes.append(entry)
        return entry

    def _discard_echo(self, entry: tuple[tuple[str, str], float]) -> None:
        with contextlib.suppress(ValueError):
            self._echoes.remove(entry)

    def _consume_echo(self, event: MirrorEvent) -> bool:
        now = time.monotonic()
        while self._echoes and self._echoes[0][1] < now:
            self._echoes.popleft()

        key = event.echo_key
        for entry in self._echoes:
            if entry[0] == key:
                self._echoes.remove(entry)
                return True
        return False
