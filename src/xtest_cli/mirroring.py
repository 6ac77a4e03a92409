"""
鏡像引擎

訂閱來源 Adapter 的事件，並在目標 Adapter 上重播等效指令。
重播的指令帶有 mirrored 標記，目標端觀察到的回音不會再被鏡像。
控制通道未連線時觀察到的事件直接丟棄，不會補送。
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable

from xtest_cli.base.adapter import BrowserAdapter
from xtest_cli.schemas import MirrorEvent, MirrorEventKind, XtestError

logger = logging.getLogger(__name__)


class MirrorEngine:
    """
    鏡像引擎

    單一消費任務依觀察順序逐一重播；重播失敗只記錄，不重試也不中斷鏡像。
    is_open 回傳 False（控制通道未連線）時，事件直接丟棄。
    """

    def __init__(
        self,
        source: BrowserAdapter,
        target: BrowserAdapter,
        is_open: Callable[[], bool] | None = None,
    ):
        self.source = source
        self.target = target
        self.mirrored = 0
        self.failed = 0
        self.dropped = 0
        self._is_open = is_open
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """開始鏡像（返回時訂閱已建立）"""
        if self.running:
            logger.warning("鏡像引擎已在運行中")
            return
        self._task = asyncio.create_task(self._run(), name="mirror-engine")
        # 讓出一次事件迴圈，消費任務會先執行到 observe() 內的等待點
        await asyncio.sleep(0)
        logger.info(f"🪞 鏡像已啟動: {self.source.kind.value} → {self.target.kind.value}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info(f"🪞 鏡像已停止（成功 {self.mirrored}，失敗 {self.failed}，丟棄 {self.dropped}）")

    async def _run(self) -> None:
        async for event in self.source.observe():
            await self._replay(event)

    async def _replay(self, event: MirrorEvent) -> None:
        if event.kind is MirrorEventKind.NAVIGATION and (not event.url or event.url == "about:blank"):
            return

        if self._is_open is not None and not self._is_open():
            self.dropped += 1
            logger.warning(f"控制通道未連線，丟棄鏡像事件: {event.kind.value} {event.url or event.selector}")
            return

        command = event.to_command(mirrored=True)
        try:
            await self.target.execute(command)
        except XtestError as e:
            self.failed += 1
            logger.warning(f"⚠️ 鏡像失敗 {command.type.value}: {e}")
        except Exception as e:
            self.failed += 1
            logger.exception(f"⚠️ 鏡像時發生未預期錯誤 {command.type.value}: {e}")
        else:
            self.mirrored += 1
            logger.info(f"🪞 已鏡像 {command.type.value} → {self.target.kind.value}")
