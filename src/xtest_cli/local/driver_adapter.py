"""
本地瀏覽器 Adapter

封裝 Playwright 瀏覽器操作，提供統一的指令執行接口，
並透過頁面事件（導航、點擊、輸入）產生鏡像事件。
"""

import base64
import contextlib
import html
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from playwright.async_api import async_playwright

from xtest_cli.base.adapter import BrowserAdapter
from xtest_cli.config import Config
from xtest_cli.schemas import Command, CommandType, DriverError, MirrorEvent, MirrorEventKind, SessionKind
from xtest_cli.utils import truncate_string

logger = logging.getLogger(__name__)

MIRROR_BINDING = "__xtestMirror"

# 注入每個文件：回報使用者的點擊與輸入（以 CSS selector 定位元素）
MIRROR_SCRIPT = r"""
(() => {
  if (window.__xtestMirrorInstalled) return;
  window.__xtestMirrorInstalled = true;

  const cssPath = (el) => {
    if (!(el instanceof Element)) return null;
    if (el.id) return '#' + CSS.escape(el.id);
    const name = el.getAttribute('name');
    if (name) return el.tagName.toLowerCase() + '[name="' + name.replace(/"/g, '\\"') + '"]';
    const parts = [];
    let node = el;
    while (node && node.nodeType === 1 && node !== document.documentElement) {
      if (node.id) {
        parts.unshift('#' + CSS.escape(node.id));
        break;
      }
      let index = 1;
      let sibling = node;
      while ((sibling = sibling.previousElementSibling)) {
        if (sibling.tagName === node.tagName) index++;
      }
      parts.unshift(node.tagName.toLowerCase() + ':nth-of-type(' + index + ')');
      node = node.parentElement;
    }
    return parts.join(' > ');
  };

  const report = (kind, target, value) => {
    const selector = cssPath(target);
    if (!selector || typeof window.__xtestMirror !== 'function') return;
    window.__xtestMirror({ kind, selector, value: value === undefined ? null : value }).catch(() => {});
  };

  document.addEventListener('click', (e) => report('click', e.target), true);
  document.addEventListener('change', (e) => {
    const t = e.target;
    if (!t || !(t.tagName === 'TEXTAREA' || (t.tagName === 'INPUT' && !['checkbox', 'radio'].includes(t.type)))) return;
    report('input', t, String(t.value));
  }, true);
})();
"""

LANDING_PAGE = """
<div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex; align-items: center; justify-content: center; height: 100vh;
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); color: white; text-align: center;">
  <div>
    <h1 style="font-size: 48px;">xtest CLI Browser</h1>
    <p style="font-size: 18px; opacity: 0.7;">Session: {session_id}</p>
    <p style="font-size: 16px;">This browser is controlled remotely</p>
  </div>
</div>
"""

Handler = Callable[[Any, dict[str, Any]], Awaitable[Any]]


class LocalDriverAdapter(BrowserAdapter):
    """
    本地瀏覽器 Adapter

    啟動（或透過 CDP 連接）本地瀏覽器，並在單一 Page 上執行指令。
    """

    kind = SessionKind.LOCAL

    def __init__(self, config: Config, playwright_factory: Callable[[], Any] = async_playwright):
        super().__init__()
        self._config = config
        self._playwright_factory = playwright_factory
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None
        self._attached = False  # 透過 CDP 附加到外部瀏覽器
        self._handlers: dict[CommandType, Handler] = {
            CommandType.NAVIGATE: self._handle_navigate,
            CommandType.CLICK: self._handle_click,
            CommandType.TYPE: self._handle_type,
            CommandType.SCREENSHOT: self._handle_screenshot,
            CommandType.EVALUATE: self._handle_evaluate,
            CommandType.WAIT_FOR_SELECTOR: self._handle_wait_for_selector,
            CommandType.SELECT: self._handle_select,
            CommandType.PRESS: self._handle_press,
            CommandType.PAGE_INFO: self._handle_page_info,
            CommandType.STATUS: self._handle_status,
        }

    @property
    def is_connected(self) -> bool:
        """是否已連接到瀏覽器"""
        return self._browser is not None and self._page is not None and self._browser.is_connected()

    @property
    def page(self) -> Any:
        return self._page

    # ═══════════════════════════════════════════════════════════════════════════════
    # 生命週期
    # ═══════════════════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """
        啟動本地瀏覽器

        Raises:
            DriverError: 無法啟動或連接瀏覽器
        """
        try:
            self._playwright = await self._playwright_factory().start()
            if self._config.cdp_endpoint:
                await self._attach_over_cdp()
            else:
                await self._launch()
            await self._install_hooks()
            await self._show_landing_page()
        except Exception as e:
            logger.exception(f"❌ 無法啟動本地瀏覽器: {e}")
            await self._teardown()
            raise DriverError(f"無法啟動本地瀏覽器: {e}") from e

    async def _launch(self) -> None:
        config = self._config
        launcher = getattr(self._playwright, config.browser_type)

        args: list[str] = []
        if config.browser_type == "chromium":
            args.append("--start-maximized")
            if config.mode == "inspector" or config.devtools:
                args.append("--auto-open-devtools-for-tabs")

        logger.info(f"正在啟動本地 {config.browser_type} 瀏覽器 (mode={config.mode})...")
        self._browser = await launcher.launch(headless=config.headless, slow_mo=config.slow_mo, args=args)

        context_options: dict[str, Any] = {
            "viewport": {"width": config.viewport_width, "height": config.viewport_height},
        }
        if config.record:
            Path(config.recordings_dir).mkdir(parents=True, exist_ok=True)
            context_options["record_video_dir"] = config.recordings_dir
            context_options["record_video_size"] = context_options["viewport"]

        self._context = await self._browser.new_context(**context_options)
        self._page = await self._context.new_page()
        logger.info(f"✅ 本地瀏覽器已啟動: {self._browser.version}")

    async def _attach_over_cdp(self) -> None:
        endpoint = self._config.cdp_endpoint
        logger.info(f"正在連接到 Chrome CDP: {endpoint}")
        self._browser = await self._playwright.chromium.connect_over_cdp(endpoint)
        self._attached = True
        logger.info(f"✅ 已連接到瀏覽器: {self._browser.version}")

        # 取得或建立 Page
        contexts = self._browser.contexts
        if contexts and contexts[0].pages:
            self._context = contexts[0]
            self._page = contexts[0].pages[0]
            logger.info(f"使用現有 Page: {self._page.url}")
        else:
            self._context = contexts[0] if contexts else await self._browser.new_context()
            self._page = await self._context.new_page()
            logger.info("建立新 Page")

    async def _install_hooks(self) -> None:
        """掛上頁面事件，產生鏡像事件"""
        await self._context.expose_binding(MIRROR_BINDING, self._on_dom_event)
        await self._context.add_init_script(MIRROR_SCRIPT)
        self._page.on("framenavigated", self._on_frame_navigated)
        self._page.on("console", lambda msg: logger.debug(f"[Browser Console] {msg.text}"))
        self._page.on("pageerror", lambda error: logger.warning(f"[Browser Error] {error}"))

    async def _show_landing_page(self) -> None:
        if self._attached:
            return
        await self._page.set_content(LANDING_PAGE.format(session_id=html.escape(self._config.session_id)))

    async def close(self) -> None:
        """關閉本地瀏覽器（CDP 模式只中斷連接，不關閉外部瀏覽器）"""
        await self._teardown()
        logger.info("✅ 本地瀏覽器已關閉")

    async def _teardown(self) -> None:
        if not self._attached:
            if self._context is not None:
                with contextlib.suppress(Exception):
                    await self._context.close()
            if self._browser is not None:
                with contextlib.suppress(Exception):
                    await self._browser.close()
        self._page = None
        self._context = None
        self._browser = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"停止 Playwright 時發生錯誤: {e}")
            self._playwright = None

    # ═══════════════════════════════════════════════════════════════════════════════
    # 事件觀察
    # ═══════════════════════════════════════════════════════════════════════════════

    def _on_frame_navigated(self, frame: Any) -> None:
        try:
            if self._page is None or frame != self._page.main_frame:
                return
            url = frame.url
            if not url or url == "about:blank":
                return
            self._publish(MirrorEvent(MirrorEventKind.NAVIGATION, url=url))
        except Exception as e:
            logger.warning(f"處理導航事件失敗: {e}")

    def _on_dom_event(self, source: Any, payload: Any) -> None:
        try:
            kind = MirrorEventKind(payload["kind"])
            self._publish(MirrorEvent(kind, selector=payload["selector"], value=payload.get("value")))
        except Exception as e:
            logger.warning(f"無法解析頁面事件 {payload!r}: {e}")

    # ═══════════════════════════════════════════════════════════════════════════════
    # 指令執行
    # ═══════════════════════════════════════════════════════════════════════════════

    def _ensure_page(self) -> Any:
        """確保有可用的 Page"""
        if self._page is None:
            raise DriverError("本地瀏覽器未啟動")
        return self._page

    async def _execute(self, command: Command) -> Any:
        handler = self._handlers.get(command.type)
        if handler is None:
            raise DriverError(f"未知的指令: {command.type.value}")

        page = self._ensure_page()
        logger.info(f"→ [local] {command.type.value} {truncate_string(str(command.params))}")
        try:
            return await handler(page, command.params)
        except KeyError as e:
            raise DriverError(f"{command.type.value} 缺少參數: {e.args[0]}") from e
        except Exception as e:
            logger.error(f"❌ [local] {command.type.value} 失敗: {e}")
            raise DriverError(f"{command.type.value} 失敗: {e}") from e

    async def _handle_navigate(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        await page.goto(params["url"], wait_until=params.get("waitUntil", "domcontentloaded"))
        return {"url": page.url}

    async def _handle_click(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        await page.click(params["selector"])
        return {"success": True}

    async def _handle_type(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        await page.fill(params["selector"], params["text"])
        return {"success": True}

    async def _handle_screenshot(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        path = params.get("path")
        screenshot_bytes = await page.screenshot(path=path, full_page=params.get("fullPage", False))
        result: dict[str, Any] = {"data": base64.b64encode(screenshot_bytes).decode("utf-8")}
        if path:
            result["path"] = path
        return result

    async def _handle_evaluate(self, page: Any, params: dict[str, Any]) -> Any:
        return await page.evaluate(params["script"])

    async def _handle_wait_for_selector(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        await page.wait_for_selector(
            params["selector"],
            timeout=params.get("timeout", 30000),
            state=params.get("state", "visible"),
        )
        return {"success": True}

    async def _handle_select(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        values = await page.select_option(params["selector"], params["value"])
        return {"success": True, "values": values}

    async def _handle_press(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        await page.press(params["selector"], params["key"])
        return {"success": True}

    async def _handle_page_info(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        return {"url": page.url, "title": await page.title()}

    async def _handle_status(self, page: Any, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "browser": self._config.browser_type,
            "mode": self._config.mode,
            "connected": self.is_connected,
            "url": page.url,
        }
