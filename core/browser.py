"""
無頭瀏覽器服務模組

處理被 Cloudflare 等反機器人機制保護的頁面：
- 整個程序共用一個瀏覽器實例（延遲啟動、斷線時重新啟動）
- 每次抓取開新頁面，無論成功與否都會關閉頁面
- 載入後輪詢頁面內容，等待驗證挑戰結束
"""

import asyncio
import logging
from typing import Optional

from playwright.async_api import Browser, Playwright, async_playwright

from .config import BrowserSettings
from .fetcher import FetchResult
from .errors import FetchErrorKind

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# 出現任一字串即表示仍在驗證頁面
CHALLENGE_MARKERS = (
    "Just a moment",
    "Checking your browser",
    "cf-browser-verification",
    "challenge-platform",
    "Verifying you are human",
)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--no-zygote",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-default-apps",
    "--disable-sync",
    "--disable-translate",
    "--hide-scrollbars",
    "--metrics-recording-only",
    "--mute-audio",
    "--no-first-run",
]


def has_challenge(content: str) -> bool:
    return any(marker in content for marker in CHALLENGE_MARKERS)


class BrowserSession:
    """
    共用的瀏覽器工作階段

    瀏覽器在第一次使用時啟動，之後重複使用；
    若偵測到已斷線，下次使用時重新啟動。
    """

    def __init__(self, settings: Optional[BrowserSettings] = None):
        self.settings = settings or BrowserSettings()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        # 額外等待，確保頁面腳本執行完畢
        self.settle_delay = 1.0

    @property
    def browser(self) -> Optional[Browser]:
        """取得當前瀏覽器實例"""
        return self._browser

    async def get_browser(self) -> Browser:
        """
        取得或建立瀏覽器實例

        Returns:
            已連線的 Browser
        """
        if self._browser is not None and self._browser.is_connected():
            return self._browser

        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser

            logger.info("Launching headless browser (%s)", self.settings.executable_path or "bundled chromium")
            try:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.settings.headless,
                    executable_path=self.settings.executable_path or None,
                    args=LAUNCH_ARGS,
                    timeout=self.settings.page_timeout_ms,
                )
            except Exception:
                self._browser = None
                raise
            logger.info("Headless browser ready")
            return self._browser

    async def wait_for_challenge(self, page) -> bool:
        """
        輪詢頁面，直到驗證挑戰消失或用完嘗試次數

        Returns:
            挑戰是否已通過
        """
        max_attempts = self.settings.max_challenge_attempts
        for attempt in range(max_attempts):
            content = await page.content()
            if not has_challenge(content):
                return True
            logger.info("Challenge page detected, waiting (%d/%d)", attempt + 1, max_attempts)
            await asyncio.sleep(self.settings.challenge_wait_seconds)
        logger.warning("Challenge still present after %d attempts, parsing anyway", max_attempts)
        return False

    async def fetch(self, url: str) -> FetchResult:
        """
        以瀏覽器載入頁面並取得渲染後的 HTML

        Returns:
            FetchResult，content 為頁面 HTML
        """
        page = None
        try:
            browser = await self.get_browser()
            page = await browser.new_page(
                user_agent=BROWSER_USER_AGENT,
                extra_http_headers={"Accept-Language": "en-US,en;q=0.9,zh-CN;q=0.8,zh;q=0.7"},
            )
            logger.info("Browser fetching %s", url)
            await page.goto(url, wait_until="networkidle", timeout=self.settings.page_timeout_ms)
            await self.wait_for_challenge(page)
            await asyncio.sleep(self.settle_delay)
            content = await page.content()
            logger.info("Browser fetched %s (%d chars)", url, len(content))
            return FetchResult.ok(content)
        except Exception as e:
            logger.error("Browser fetch failed for %s: %s", url, e)
            return FetchResult.fail(FetchErrorKind.TRANSPORT, f"Browser fetch failed: {e}")
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception as e:
                    logger.debug("Ignoring page close error: %s", e)

    async def close(self) -> None:
        """依序關閉瀏覽器與 Playwright 實例"""
        if self._browser is not None:
            logger.info("Closing headless browser")
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug("Ignoring browser close error: %s", e)
            self._browser = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug("Ignoring playwright stop error: %s", e)
            self._playwright = None


_session: Optional[BrowserSession] = None


def get_browser_session(settings: Optional[BrowserSettings] = None) -> BrowserSession:
    """取得程序共用的 BrowserSession"""
    global _session
    if _session is None:
        _session = BrowserSession(settings)
    return _session


async def fetch_with_browser(url: str) -> FetchResult:
    return await get_browser_session().fetch(url)


async def close_browser() -> None:
    global _session
    if _session is not None:
        await _session.close()
        _session = None
