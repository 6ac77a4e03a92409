"""
xtest CLI 配置

從環境變數或命令列參數載入設定。
"""

import os
import uuid
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from xtest_cli.schemas import ConfigError

# 自動載入 .env 檔案（目前目錄優先）
for _env_path in (Path.cwd() / ".env", Path(__file__).parent.parent.parent / ".env"):
    if _env_path.exists():
        load_dotenv(_env_path)
        break

BROWSER_TYPES = ("chromium", "firefox", "webkit")
BROWSER_MODES = ("headed", "headless", "inspector")


def _env_bool(key: str, default: bool) -> bool:
    """讀取布林型環境變數"""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """xtest CLI 配置"""

    # 雲端服務位址（http/https，控制通道會自動轉為 ws/wss）
    server_url: str = "https://xtest.ing"

    # 認證 API Key
    api_key: str = ""

    # Session ID（留空則自動產生）
    session_id: str = ""

    # 本地瀏覽器
    browser_type: str = "chromium"
    mode: str = "headed"
    devtools: bool = False
    slow_mo: int = 100
    record: bool = False
    recordings_dir: str = "./recordings"
    viewport_width: int = 1280
    viewport_height: int = 720

    # Chrome CDP Endpoint（設定後改為附加到現有瀏覽器，而非自行啟動）
    cdp_endpoint: str = ""

    # 控制通道與遠端 API 路徑
    channel_path: str = "/cli/connect"
    api_prefix: str = "/api/enhanced-browser"

    # 重連設定（秒）
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    max_reconnect_attempts: int = 5

    # 逾時設定（秒）
    api_timeout: float = 10.0
    command_timeout: float = 30.0
    heartbeat_interval: float = 30.0

    # 截圖輸出目錄
    screenshot_dir: str = "."

    # 雲端瀏覽器建立後是否開始串流
    stream: bool = True

    def __post_init__(self) -> None:
        if not self.session_id:
            self.session_id = f"cli-{uuid.uuid4().hex[:12]}"

    @property
    def headless(self) -> bool:
        """是否為無頭模式"""
        return self.mode == "headless"

    def validate(self) -> None:
        """
        檢查配置是否合法

        Raises:
            ConfigError: 瀏覽器類型、模式或伺服器位址不合法
        """
        if self.browser_type not in BROWSER_TYPES:
            raise ConfigError(f"不支援的瀏覽器類型: {self.browser_type}（可用: {', '.join(BROWSER_TYPES)}）")
        if self.mode not in BROWSER_MODES:
            raise ConfigError(f"不支援的瀏覽器模式: {self.mode}（可用: {', '.join(BROWSER_MODES)}）")
        if not self.server_url.startswith(("http://", "https://")):
            raise ConfigError(f"伺服器位址必須以 http:// 或 https:// 開頭: {self.server_url}")
        if self.max_reconnect_attempts < 0:
            raise ConfigError("max_reconnect_attempts 不可為負數")

    @classmethod
    def from_env(cls) -> "Config":
        """從環境變數載入配置"""
        return cls(
            server_url=os.getenv("XTEST_SERVER_URL", "https://xtest.ing").rstrip("/"),
            api_key=os.getenv("XTEST_API_KEY", ""),
            session_id=os.getenv("XTEST_SESSION_ID", ""),
            browser_type=os.getenv("XTEST_BROWSER", "chromium"),
            mode=os.getenv("XTEST_MODE", "headed"),
            devtools=_env_bool("XTEST_DEVTOOLS", False),
            slow_mo=int(os.getenv("XTEST_SLOW_MO", "100")),
            record=_env_bool("XTEST_RECORD", False),
            recordings_dir=os.getenv("XTEST_RECORDINGS_DIR", "./recordings"),
            cdp_endpoint=os.getenv("XTEST_CDP_ENDPOINT", ""),
            reconnect_base_delay=float(os.getenv("XTEST_RECONNECT_BASE_DELAY", "1.0")),
            reconnect_max_delay=float(os.getenv("XTEST_RECONNECT_MAX_DELAY", "30.0")),
            max_reconnect_attempts=int(os.getenv("XTEST_MAX_RECONNECT_ATTEMPTS", "5")),
            api_timeout=float(os.getenv("XTEST_API_TIMEOUT", "10.0")),
            command_timeout=float(os.getenv("XTEST_COMMAND_TIMEOUT", "30.0")),
            heartbeat_interval=float(os.getenv("XTEST_HEARTBEAT_INTERVAL", "30.0")),
            screenshot_dir=os.getenv("XTEST_SCREENSHOT_DIR", "."),
            stream=_env_bool("XTEST_STREAM", True),
        )
