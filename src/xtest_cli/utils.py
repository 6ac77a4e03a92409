"""
輔助函數工具箱

包含通用工具函數與格式化功能
"""
import time


def truncate_string(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """截斷過長的字串"""
    if len(text) > max_length:
        return text[:max_length] + suffix
    return text


def mask_secret(value: str) -> str:
    """遮蔽金鑰，只保留頭尾各 4 碼"""
    if len(value) <= 8:
        return "•" * len(value)
    return value[:4] + "•" * (len(value) - 8) + value[-4:]


def timestamp_ms() -> int:
    """目前時間（毫秒）"""
    return int(time.time() * 1000)
