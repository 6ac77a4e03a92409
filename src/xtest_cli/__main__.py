"""
xtest CLI 主入口

從本機控制本地瀏覽器與雲端瀏覽器。

使用方式：
    xtest browser                              # 本地瀏覽器，接受雲端遠端控制
    xtest dual --url https://example.com       # 本地 + 雲端，各自獨立控制
    xtest mirror --url https://example.com     # 本地操作同步鏡像到雲端
    xtest sessions list                        # 列出雲端 Session
    xtest sessions close <session-id>          # 關閉雲端 Session

環境變數：
    XTEST_SERVER_URL    - 雲端服務位址
    XTEST_API_KEY       - 認證 API Key
    XTEST_BROWSER       - 瀏覽器類型 (chromium / firefox / webkit)
    XTEST_MODE          - 瀏覽器模式 (headed / headless / inspector)
    XTEST_CDP_ENDPOINT  - 附加到現有 Chrome 的 CDP Endpoint
"""

import argparse
import asyncio
import logging
import sys
from typing import Any

from xtest_cli import __version__
from xtest_cli.base.logging_config import setup_logging
from xtest_cli.config import BROWSER_MODES, BROWSER_TYPES, Config
from xtest_cli.controller import SessionController
from xtest_cli.remote import RemoteSessionApi
from xtest_cli.schemas import MirrorEvent, TargetSelector, XtestError
from xtest_cli.utils import mask_secret

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """解析命令列參數"""
    parser = argparse.ArgumentParser(
        prog="xtest",
        description="xtest CLI - 從本機同時控制本地與雲端瀏覽器",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
範例：
  # 使用環境變數
  export XTEST_API_KEY=your-api-key
  xtest browser

  # 本地與雲端瀏覽器同時開啟
  xtest dual --url https://example.com

  # 本地操作即時鏡像到雲端
  xtest mirror --url https://example.com --browser firefox
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--server", type=str, help="雲端服務位址 (預設: https://xtest.ing)")
    common.add_argument("--api-key", type=str, help="認證 API Key")
    common.add_argument("--session", type=str, help="Session ID (預設自動產生)")
    common.add_argument("--browser", type=str, choices=BROWSER_TYPES, help="瀏覽器類型 (預設: chromium)")
    common.add_argument("--mode", type=str, choices=BROWSER_MODES, help="瀏覽器模式 (預設: headed)")
    common.add_argument("--cdp-endpoint", type=str, help="附加到現有 Chrome 的 CDP Endpoint")
    common.add_argument("-v", "--verbose", action="store_true", help="顯示詳細日誌")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("browser", parents=[common], help="啟動本地瀏覽器，接受雲端遠端控制")

    dual = subparsers.add_parser("dual", parents=[common], help="同時開啟本地與雲端瀏覽器")
    dual.add_argument("--url", type=str, help="啟動後兩端都導航到此 URL")

    mirror = subparsers.add_parser("mirror", parents=[common], help="本地操作同步鏡像到雲端瀏覽器")
    mirror.add_argument("--url", type=str, help="啟動後本地導航到此 URL（會鏡像到雲端）")

    sessions = subparsers.add_parser("sessions", parents=[common], help="管理雲端 Session")
    sessions_sub = sessions.add_subparsers(dest="action", required=True)
    sessions_sub.add_parser("list", help="列出雲端 Session")
    close = sessions_sub.add_parser("close", help="關閉雲端 Session")
    close.add_argument("session_id", type=str, help="要關閉的 Session ID")

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    """載入配置，命令列參數覆蓋環境變數"""
    config = Config.from_env()

    if args.server:
        config.server_url = args.server.rstrip("/")
    if args.api_key:
        config.api_key = args.api_key
    if args.session:
        config.session_id = args.session
    if args.browser:
        config.browser_type = args.browser
    if args.mode:
        config.mode = args.mode
    if args.cdp_endpoint:
        config.cdp_endpoint = args.cdp_endpoint

    config.validate()
    return config


def _log_event(event: str, payload: Any) -> None:
    if event == "channel_open":
        logger.info("🟢 已連接到雲端服務")
    elif event == "remote_event" and isinstance(payload, MirrorEvent):
        logger.info(f"☁️ 雲端事件: {payload.kind.value} {payload.url or payload.selector}")
    elif event == "fatal":
        logger.error(f"💥 {payload}")


async def run_session(config: Config, targets: TargetSelector, mirror: bool = False, url: str | None = None) -> int:
    """
    啟動 Session 並持續運行直到中斷或致命錯誤

    Returns:
        結束代碼
    """
    controller = SessionController(config, targets, mirror=mirror)
    controller.add_listener(_log_event)

    try:
        await controller.start()
    except XtestError as e:
        logger.error(f"❌ 無法啟動 Session: {e}")
        return 1

    try:
        if url:
            # 鏡像模式只導航本地，由鏡像引擎同步到雲端
            result = await controller.navigate(TargetSelector.LOCAL if mirror else targets, url)
            for kind, outcome in result.to_dict().items():
                status = "✅" if outcome["success"] else f"❌ {outcome['error']}"
                logger.info(f"   [{kind}] 導航到 {url}: {status}")

        logger.info("按 Ctrl+C 結束 Session")
        await controller.wait_stopped()
    finally:
        await controller.stop()

    if controller.fatal_error is not None:
        logger.error(f"❌ Session 因錯誤終止: {controller.fatal_error}")
        return 1
    return 0


async def run_sessions_command(config: Config, action: str, session_id: str | None = None) -> int:
    """雲端 Session 管理"""
    async with RemoteSessionApi(config.server_url, config.api_key, config.api_prefix, config.api_timeout) as api:
        try:
            if action == "close":
                await api.delete_session(session_id or "")
                print(f"✅ 已關閉 Session: {session_id}")
                return 0

            sessions = await api.list_sessions()
        except XtestError as e:
            logger.error(f"❌ {e}")
            return 1

    if not sessions:
        print("目前沒有雲端 Session")
        return 0
    print(f"{'SESSION ID':<40} {'STATUS':<12} URL")
    for item in sessions:
        sid = item.get("sessionId") or item.get("id", "")
        print(f"{sid:<40} {item.get('status', '-'):<12} {item.get('url', '')}")
    return 0


async def _main(args: argparse.Namespace) -> int:
    try:
        config = build_config(args)
    except XtestError as e:
        logger.error(f"❌ {e}")
        return 1

    if not config.api_key:
        logger.error("❌ 未設定 API Key，請使用 --api-key 或設定 XTEST_API_KEY 環境變數")
        return 1

    if args.command == "sessions":
        return await run_sessions_command(config, args.action, getattr(args, "session_id", None))

    logger.info("=" * 60)
    logger.info(f"🌐 xtest CLI v{__version__} 啟動中...")
    logger.info(f"   Server URL: {config.server_url}")
    logger.info(f"   API Key: {mask_secret(config.api_key)}")
    logger.info(f"   Session ID: {config.session_id}")
    logger.info(f"   Browser: {config.browser_type} ({config.mode})")
    if config.cdp_endpoint:
        logger.info(f"   CDP Endpoint: {config.cdp_endpoint}")
    logger.info("=" * 60)

    if args.command == "browser":
        return await run_session(config, TargetSelector.LOCAL)
    if args.command == "dual":
        return await run_session(config, TargetSelector.BOTH, url=args.url)
    return await run_session(config, TargetSelector.BOTH, mirror=True, url=args.url)


def main(argv: list[str] | None = None) -> int:
    """主函式"""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        logger.info("👋 收到中斷訊號，已停止")
        return 0


if __name__ == "__main__":
    sys.exit(main())
