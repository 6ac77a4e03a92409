"""
日誌設定模組

提供統一的日誌系統配置，支援控制台顏色輸出和檔案輪替。
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# 預設外部套件日誌等級
EXTERNAL_LOG = [
    "asyncio",
    "playwright",
    "httpx",
    "httpcore",
    "websockets",
]

# 日誌時間格式
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FORMAT = "[%(asctime)s][%(levelname)-8s][%(name)s:%(lineno)d] %(message)s"
# 非 verbose 模式的精簡控制台格式
CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s %(message)s"
CONSOLE_DATE_FORMAT = "%H:%M:%S"


def _get_color_formatter_func(fg: int | None = None, bg: int | None = None):
    """根據前景或背景顏色代碼，返回用於文字著色的函式。"""
    color_codes = []
    if fg is not None:
        color_codes.append(f"38;5;{fg}")
    if bg is not None:
        color_codes.append(f"48;5;{bg}")

    if not color_codes:
        return lambda text: text

    color_prefix = f"\033[{';'.join(color_codes)}m"
    reset_code = "\033[0m"

    def apply_color(text: str) -> str:
        return f"{color_prefix}{text}{reset_code}"

    return apply_color


# 不同日誌等級的顏色映射
_LEVEL_COLORS = {
    logging.DEBUG: _get_color_formatter_func(fg=8),     # 灰色
    logging.INFO: _get_color_formatter_func(fg=6),      # 青色
    logging.WARNING: _get_color_formatter_func(fg=3),   # 黃色
    logging.ERROR: _get_color_formatter_func(fg=1),     # 紅色
    logging.CRITICAL: _get_color_formatter_func(fg=7, bg=1),
}


class ColoredFormatter(logging.Formatter):
    """自訂日誌格式化器，為控制台輸出添加 ANSI 顏色。"""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        return _LEVEL_COLORS.get(record.levelno, lambda x: x)(message)


def setup_logging(
    verbose: bool = False,
    log_file: str = "xtest.log",
    file_log_level: int = logging.NOTSET,
    log_dir: str | None = None,
) -> None:
    """
    設定 CLI 的全局日誌系統。

    Args:
        verbose: 是否在控制台顯示 DEBUG 日誌。
        log_file: 日誌檔案名稱（相對於 log_dir）。
        file_log_level: 檔案輸出的日誌等級，NOTSET 表示不寫檔。
        log_dir: 日誌目錄路徑，預設為目前目錄下的 logs/。
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # 清除現有的 handler
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    # 1. 檔案處理器
    if file_log_level != logging.NOTSET:
        log_dir_path = Path(log_dir) if log_dir else Path.cwd() / "logs"
        log_dir_path.mkdir(parents=True, exist_ok=True)

        try:
            file_handler = RotatingFileHandler(
                filename=str(log_dir_path / log_file),
                maxBytes=10 * 1024 * 1024,  # 10 MB
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setLevel(file_log_level)
            file_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
            root_logger.addHandler(file_handler)
        except OSError as e:
            sys.stderr.write(f"警告: 無法建立日誌檔案處理器: {e}\n")

    # 2. 控制台處理器
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    fmt, datefmt = (LOG_FORMAT, DATE_FORMAT) if verbose else (CONSOLE_FORMAT, CONSOLE_DATE_FORMAT)
    formatter_cls = logging.Formatter if sys.platform == "win32" or not sys.stdout.isatty() else ColoredFormatter
    console_formatter = formatter_cls(fmt=fmt, datefmt=datefmt)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    # 過濾外部套件的 DEBUG 日誌
    for log_name in EXTERNAL_LOG:
        logging.getLogger(log_name).setLevel(logging.INFO)

    root_logger.debug("日誌系統設定完成")
