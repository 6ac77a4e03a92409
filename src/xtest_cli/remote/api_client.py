"""
遠端 Session API 客戶端

負責與雲端瀏覽器服務的 HTTP API 通訊：建立、導航、執行、截圖、串流與刪除 Session。
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from xtest_cli import __version__
from xtest_cli.schemas import RemoteApiError, RemoteApiUnreachable

logger = logging.getLogger(__name__)


class RemoteSessionApi:
    """
    遠端 Session API 客戶端

    使用 httpx.AsyncClient 進行非同步 HTTP 請求，所有請求都帶 Bearer 認證。

    Attributes:
        base_url: API 基礎 URL（伺服器位址 + API 前綴）
        timeout: 單一請求逾時（秒）
    """

    def __init__(
        self,
        server_url: str,
        api_key: str,
        api_prefix: str = "/api/enhanced-browser",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        初始化客戶端

        Args:
            server_url: 伺服器位址（http/https）
            api_key: API Key
            api_prefix: API 路徑前綴
            timeout: 逾時時間（秒）
            transport: 自訂 transport（測試用）
        """
        self.base_url = server_url.rstrip("/") + api_prefix
        self.timeout = timeout
        self._api_key = api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> RemoteSessionApi:
        """進入非同步上下文管理器"""
        self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """離開非同步上下文管理器"""
        await self.aclose()

    def open(self) -> httpx.AsyncClient:
        """建立（或取得既有的）HTTP 連線池"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "User-Agent": f"xtest-cli/{__version__}",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """關閉 HTTP 連線池"""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        發送請求到遠端 API

        Args:
            method: HTTP 方法
            endpoint: API 端點（不含基礎 URL）
            json: 請求內容

        Returns:
            API 回應 JSON 資料

        Raises:
            RemoteApiError: 非 2xx 回應，或回應 success=false
            RemoteApiUnreachable: 連線失敗或逾時
        """
        client = self.open()

        logger.debug(f"遠端 API 請求: {method} {endpoint}")
        try:
            response = await client.request(method, endpoint, json=json)
        except httpx.TransportError as e:
            raise RemoteApiUnreachable(f"無法連線到遠端 API {method} {endpoint}: {e!r}") from e

        if not response.is_success:
            body: Any
            try:
                body = response.json()
            except ValueError:
                body = response.text
            logger.error(f"遠端 API 錯誤 ({response.status_code}) {method} {endpoint}: {body}")
            raise RemoteApiError(response.status_code, body)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteApiError(response.status_code, response.text) from e

        if not isinstance(data, dict):
            return {"data": data}
        if data.get("success") is False:
            raise RemoteApiError(response.status_code, data.get("error") or data)
        return data

    # ═══════════════════════════════════════════════════════════════════════════════
    # Session 操作
    # ═══════════════════════════════════════════════════════════════════════════════

    async def create_session(
        self,
        session_id: str,
        headless: bool = False,
        devtools: bool = False,
        url: str | None = None,
    ) -> dict[str, Any]:
        """建立雲端瀏覽器 Session"""
        payload: dict[str, Any] = {"sessionId": session_id, "headless": headless, "devtools": devtools}
        if url:
            payload["url"] = url
        return await self._request("POST", "/create-session", json=payload)

    async def navigate(self, session_id: str, url: str) -> dict[str, Any]:
        """導航到指定 URL"""
        return await self._request("POST", "/navigate", json={"sessionId": session_id, "url": url})

    async def execute(self, session_id: str, action: str, params: dict[str, Any]) -> Any:
        """
        執行瀏覽器動作

        Args:
            session_id: 雲端 Session ID
            action: 動作名稱（click, type, evaluate 等）
            params: 動作參數

        Returns:
            回應中的 result 欄位
        """
        data = await self._request(
            "POST",
            "/execute",
            json={"sessionId": session_id, "action": action, "params": params},
        )
        return data.get("result", data.get("data"))

    async def screenshot(self, session_id: str, filename: str | None = None) -> dict[str, Any]:
        """截圖，回應包含 base64 圖片資料"""
        payload: dict[str, Any] = {"sessionId": session_id}
        if filename:
            payload["filename"] = filename
        return await self._request("POST", "/screenshot", json=payload)

    async def start_stream(self, session_id: str) -> dict[str, Any]:
        """開始串流雲端瀏覽器畫面"""
        return await self._request("POST", "/start-stream", json={"sessionId": session_id})

    async def stop_stream(self, session_id: str) -> dict[str, Any]:
        """停止串流"""
        return await self._request("POST", "/stop-stream", json={"sessionId": session_id})

    async def delete_session(self, session_id: str) -> dict[str, Any]:
        """刪除雲端 Session"""
        return await self._request("DELETE", f"/session/{session_id}")

    async def list_sessions(self) -> list[dict[str, Any]]:
        """列出目前所有雲端 Session"""
        data = await self._request("GET", "/sessions")
        sessions = data.get("sessions", [])
        return sessions if isinstance(sessions, list) else []
