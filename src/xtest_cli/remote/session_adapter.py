"""
遠端 Session Adapter

將指令轉為遠端 Session API 的 HTTP 請求，讓雲端瀏覽器與本地瀏覽器共用同一套執行介面。
遠端的鏡像事件只來自控制通道的推送。
"""

import base64
import binascii
import logging
from pathlib import Path
from typing import Any

from xtest_cli.base.adapter import BrowserAdapter
from xtest_cli.config import Config
from xtest_cli.remote.api_client import RemoteSessionApi
from xtest_cli.schemas import (
    Command,
    CommandType,
    MirrorEvent,
    RemoteApiError,
    RemoteApiUnreachable,
    SessionKind,
)
from xtest_cli.utils import truncate_string

logger = logging.getLogger(__name__)


class RemoteSessionAdapter(BrowserAdapter):
    """
    遠端 Session Adapter

    每個 execute() 對應一次 HTTP 請求：
    navigate → /navigate、screenshot → /screenshot，其他指令 → /execute {action, params}。
    """

    kind = SessionKind.REMOTE

    def __init__(self, config: Config, api: RemoteSessionApi | None = None):
        super().__init__()
        self._config = config
        self._api = api or RemoteSessionApi(
            server_url=config.server_url,
            api_key=config.api_key,
            api_prefix=config.api_prefix,
            timeout=config.api_timeout,
        )
        self.server_session_id: str | None = None
        self._streaming = False

    async def start(self) -> None:
        """
        建立雲端瀏覽器 Session

        Raises:
            RemoteApiError: 建立失敗
            RemoteApiUnreachable: 無法連線
        """
        requested_id = f"remote-{self._config.session_id}"
        logger.info("☁️ 正在建立雲端瀏覽器 Session...")
        try:
            data = await self._api.create_session(requested_id, headless=False, devtools=False)
        except BaseException:
            await self._api.aclose()
            raise
        self.server_session_id = data.get("sessionId") or requested_id
        logger.info(f"✅ 雲端瀏覽器已建立: {self.server_session_id}")

        if self._config.stream:
            try:
                await self._api.start_stream(self.server_session_id)
                self._streaming = True
                logger.info("🎥 雲端瀏覽器串流已開始")
            except (RemoteApiError, RemoteApiUnreachable) as e:
                logger.warning(f"無法開始雲端串流: {e}")

    def _require_session(self) -> str:
        if self.server_session_id is None:
            raise RemoteApiUnreachable("雲端 Session 尚未建立")
        return self.server_session_id

    async def _execute(self, command: Command) -> Any:
        session_id = self._require_session()
        params = command.params
        logger.info(f"→ [remote] {command.type.value} {truncate_string(str(params))}")

        if command.type is CommandType.NAVIGATE:
            data = await self._api.navigate(session_id, params.get("url", ""))
            return {"url": data.get("url", params.get("url"))}

        if command.type is CommandType.SCREENSHOT:
            return await self._screenshot(session_id, params.get("path"))

        return await self._api.execute(session_id, command.type.value, params)

    async def _screenshot(self, session_id: str, path: str | None) -> dict[str, Any]:
        filename = Path(path).name if path else None
        data = await self._api.screenshot(session_id, filename=filename)
        image = data.get("data") or data.get("screenshot")
        result: dict[str, Any] = {"data": image}

        if path and image:
            try:
                Path(path).write_bytes(base64.b64decode(image))
            except (binascii.Error, ValueError) as e:
                raise RemoteApiError(200, f"截圖資料無法解碼: {e}") from e
            result["path"] = path
        return result

    def publish_remote_event(self, event: MirrorEvent) -> None:
        """接收控制通道推送的遠端事件"""
        self._publish(event)

    async def close(self) -> None:
        """
        停止串流並刪除雲端 Session

        Raises:
            RemoteApiError / RemoteApiUnreachable: 刪除失敗（HTTP 連線池仍會關閉）
        """
        session_id = self.server_session_id
        try:
            if session_id is None:
                return
            if self._streaming:
                try:
                    await self._api.stop_stream(session_id)
                except (RemoteApiError, RemoteApiUnreachable) as e:
                    logger.warning(f"停止雲端串流失敗: {e}")
                self._streaming = False
            await self._api.delete_session(session_id)
            logger.info(f"✅ 雲端瀏覽器已關閉: {session_id}")
        finally:
            self.server_session_id = None
            await self._api.aclose()
