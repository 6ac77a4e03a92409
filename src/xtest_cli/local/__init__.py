"""
本地瀏覽器模組

透過 Playwright 直接操作本機啟動的瀏覽器。
"""

from xtest_cli.local.driver_adapter import LocalDriverAdapter

__all__ = ["LocalDriverAdapter"]
