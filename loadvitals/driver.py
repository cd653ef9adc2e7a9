"""
Session driver: one isolated headless-browser session per simulated user.

:class:`SessionDriver` wraps a Playwright browser, context and page and
exposes the handful of primitives a scenario needs: navigate and wait
for network idle, evaluate JavaScript in the page, perform simple
interactions, and block requests to simulate third-party outages.

Playwright's sync API is bound to the thread that started it, so every
driver owns its own Playwright instance and browser process.  That is
what lets the orchestrator run sessions on genuinely parallel threads.

:class:`SessionPool` bounds how many drivers are open at once.  Its
:meth:`SessionPool.session` context manager pairs slot acquisition with
release and driver teardown on every exit path.

Key Concepts Demonstrated:
- Translating Playwright exceptions into the package's error taxonomy
- Idempotent request interception (re-installing replaces the filter)
- Collect-then-return polling of page errors instead of long-lived
  event listeners
"""

from __future__ import annotations

import fnmatch
import logging
import os
import signal
import threading
import time
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from playwright.sync_api import Browser, BrowserContext, Page, Playwright, Route
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from loadvitals.errors import (
    ConfigurationError,
    EnvironmentUnavailable,
    NavigationError,
    NavigationTimeout,
    ScriptError,
    SessionClosed,
    StepError,
)
from loadvitals.models import DeviceProfile, utc_now

logger = logging.getLogger(__name__)

SUPPORTED_BROWSERS = ("chromium", "firefox", "webkit")

# Installed before any page script runs.  Errors are buffered on the
# window and read back by ``drain_page_errors``.
ERROR_CAPTURE_SCRIPT = """
(() => {
  if (window.__loadvitalsErrors) { return; }
  window.__loadvitalsErrors = [];
  window.addEventListener('error', (event) => {
    window.__loadvitalsErrors.push(String(event.message || event.error || 'error'));
  });
  window.addEventListener('unhandledrejection', (event) => {
    window.__loadvitalsErrors.push('Unhandled rejection: ' + String(event.reason));
  });
  const originalError = console.error;
  console.error = function (...args) {
    window.__loadvitalsErrors.push(args.map((arg) => String(arg)).join(' '));
    return originalError.apply(console, args);
  };
})();
"""

DRAIN_ERRORS_SCRIPT = """
() => {
  const errors = window.__loadvitalsErrors || [];
  window.__loadvitalsErrors = [];
  return errors;
}
"""


class InterceptAction(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


@dataclass(frozen=True)
class RequestMatcher:
    """
    Matches request URLs against domain or URL patterns.

    Plain patterns match as substrings of the URL (``googletagmanager.com``
    matches every request to that host).  Patterns containing ``*``, ``?``
    or ``[`` are shell globs tried against both the full URL and the host.
    """

    patterns: tuple[str, ...]

    @classmethod
    def of(cls, patterns: Sequence[str] | str) -> RequestMatcher:
        if isinstance(patterns, str):
            patterns = (patterns,)
        cleaned = tuple(pattern.strip() for pattern in patterns if pattern.strip())
        return cls(cleaned)

    def matches(self, url: str) -> bool:
        host = urlsplit(url).hostname or ""
        for pattern in self.patterns:
            if any(char in pattern for char in "*?["):
                if fnmatch.fnmatch(url, pattern) or fnmatch.fnmatch(host, pattern):
                    return True
            elif pattern in url:
                return True
        return False


@dataclass(frozen=True)
class SessionHandle:
    """Identity of an open browser session."""

    session_id: str
    browser: str
    device: str | None
    opened_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class NavigationResult:
    url: str
    status: int | None
    elapsed_ms: float


class SessionDriver:
    """
    A single headless-browser session with its own cookies, cache and viewport.

    Attributes:
        browser_name: Playwright browser type (``chromium``, ``firefox``,
            ``webkit``).
        headless: Whether the browser runs without a window.
        device: Optional viewport/user-agent profile for the context.
    """

    def __init__(
        self,
        *,
        browser: str = "chromium",
        headless: bool = True,
        device: DeviceProfile | None = None,
        init_scripts: Sequence[str] = (),
    ):
        if browser not in SUPPORTED_BROWSERS:
            raise ConfigurationError(
                f"Unsupported browser '{browser}', expected one of {SUPPORTED_BROWSERS}"
            )
        self.browser_name = browser
        self.headless = headless
        self.device = device
        self._init_scripts = (ERROR_CAPTURE_SCRIPT, *init_scripts)

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._handle: SessionHandle | None = None
        self._route_handler: Callable[[Route], None] | None = None
        self._page_errors: list[str] = []
        self._closed = False
        self._browser_pid: int | None = None
        self._aborted = threading.Event()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._page is not None and not self._closed

    @property
    def handle(self) -> SessionHandle | None:
        return self._handle

    def open(self) -> SessionHandle:
        """
        Start the browser and create an isolated context and page.

        Raises:
            SessionClosed: If the driver was already closed.
            EnvironmentUnavailable: If the browser process cannot start.
        """
        if self._closed:
            raise SessionClosed("Cannot reopen a closed session")
        if self._handle is not None:
            return self._handle

        try:
            self._playwright = sync_playwright().start()
            browser_type = getattr(self._playwright, self.browser_name)
            self._browser = browser_type.launch(headless=self.headless)
            context_args: dict[str, Any] = {"ignore_https_errors": True}
            if self.device is not None:
                context_args.update(self.device.context_args())
            self._context = self._browser.new_context(**context_args)
            for script in self._init_scripts:
                self._context.add_init_script(script=script)
            self._page = self._context.new_page()
            self._browser_pid = self._read_browser_pid()
        except (PlaywrightError, OSError) as exc:
            self.close()
            raise EnvironmentUnavailable(
                f"Could not start {self.browser_name} browser session: {exc}"
            ) from exc

        self._handle = SessionHandle(
            session_id=uuid.uuid4().hex[:12],
            browser=self.browser_name,
            device=self.device.name if self.device else None,
        )
        logger.debug("Opened session %s", self._handle.session_id)
        return self._handle

    def close(self) -> None:
        """Release the page, context, browser and Playwright instance.

        Safe to call more than once.  Teardown problems are logged, not
        raised, so a failing close never masks the run's own outcome.
        """
        if self._closed:
            return
        self._closed = True
        self._route_handler = None

        for resource, label in ((self._context, "context"), (self._browser, "browser")):
            if resource is None:
                continue
            try:
                resource.close()
            except PlaywrightError as exc:
                logger.warning("Failed to close browser %s: %s", label, exc)

        if self._playwright is not None:
            try:
                self._playwright.stop()
            except PlaywrightError as exc:
                logger.warning("Failed to stop Playwright: %s", exc)

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None
        if self._handle is not None:
            logger.debug("Closed session %s", self._handle.session_id)

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def abort(self) -> None:
        """
        Force the browser down from another thread.

        Playwright objects belong to the thread that opened the session, so
        the browser process is killed instead of closed.  Whatever call the
        owning thread is blocked in then fails, and its own :meth:`close`
        releases the rest.
        """
        self._aborted.set()
        pid = self._browser_pid
        if pid is None:
            logger.warning(
                "Cannot force-close %s session: browser process id unknown", self.browser_name
            )
            return
        try:
            os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        except OSError as exc:
            logger.debug("Browser process %d already gone: %s", pid, exc)
        else:
            logger.warning("Force-closed browser process %d", pid)

    def _read_browser_pid(self) -> int | None:
        """Process id of the browser, read over CDP (Chromium only)."""
        if self.browser_name != "chromium" or self._browser is None:
            return None
        try:
            cdp = self._browser.new_browser_cdp_session()
            info = cdp.send("SystemInfo.getProcessInfo")
            cdp.detach()
        except PlaywrightError as exc:
            logger.debug("Could not read browser process id: %s", exc)
            return None
        for process in info.get("processInfo", []):
            if process.get("type") == "browser":
                return int(process["id"])
        return None

    def _require_page(self) -> Page:
        if self._closed:
            raise SessionClosed("Session is closed")
        if self._aborted.is_set():
            raise SessionClosed("Session was force-closed")
        if self._page is None:
            raise SessionClosed("Session has not been opened")
        return self._page

    def _require_context(self) -> BrowserContext:
        self._require_page()
        if self._context is None:
            raise SessionClosed("Session has no browser context")
        return self._context

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def navigate(self, url: str, max_wait_ms: float) -> NavigationResult:
        """
        Load *url* and block until network idle or *max_wait_ms* elapses.

        Raises:
            NavigationTimeout: Network idle was not reached in time.
            NavigationError: DNS/connection failure or an HTTP error status
                for the document itself.
        """
        page = self._require_page()
        self._harvest_errors(page)

        started = time.perf_counter()
        try:
            response = page.goto(url, wait_until="networkidle", timeout=max_wait_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(url, max_wait_ms) from exc
        except PlaywrightError as exc:
            raise NavigationError(url, exc.message) from exc
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        status = response.status if response is not None else None
        if status is not None and status >= 400:
            raise NavigationError(url, f"HTTP {status}")

        logger.debug("Navigated to %s (status=%s) in %.0fms", url, status, elapsed_ms)
        return NavigationResult(url=page.url, status=status, elapsed_ms=elapsed_ms)

    def wait_for_network_idle(self, max_wait_ms: float) -> None:
        page = self._require_page()
        try:
            page.wait_for_load_state("networkidle", timeout=max_wait_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(page.url, max_wait_ms) from exc

    # -------------------------------------------------------------------------
    # Interaction
    # -------------------------------------------------------------------------

    def evaluate(self, expression: str, arg: Any = None) -> Any:
        """Evaluate JavaScript in the page and return its JSON-able result."""
        page = self._require_page()
        try:
            if arg is None:
                return page.evaluate(expression)
            return page.evaluate(expression, arg)
        except PlaywrightError as exc:
            raise ScriptError(f"Page script failed: {exc.message}") from exc

    def click(self, selector: str, timeout_ms: float) -> None:
        page = self._require_page()
        try:
            page.click(selector, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise StepError(f"Element '{selector}' not clickable within {timeout_ms:.0f}ms") from exc
        except PlaywrightError as exc:
            raise StepError(f"Click on '{selector}' failed: {exc.message}") from exc

    def wait(self, duration_ms: float) -> None:
        self._require_page().wait_for_timeout(duration_ms)

    def scroll(self) -> None:
        """Scroll to the bottom of the document to trigger lazy content."""
        self.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")

    def intercept_requests(
        self,
        matcher: RequestMatcher | Sequence[str],
        action: InterceptAction = InterceptAction.BLOCK,
    ) -> None:
        """
        Install a request filter for this session.

        Re-installing replaces the previous filter.  ``BLOCK`` aborts every
        request whose URL matches; ``ALLOW`` removes the filter so all
        traffic flows again.
        """
        context = self._require_context()

        if self._route_handler is not None:
            context.unroute("**/*", self._route_handler)
            self._route_handler = None

        if InterceptAction(action) is InterceptAction.ALLOW:
            return

        if not isinstance(matcher, RequestMatcher):
            matcher = RequestMatcher.of(matcher)

        def _handle(route: Route) -> None:
            if matcher.matches(route.request.url):
                route.abort()
            else:
                route.continue_()

        context.route("**/*", _handle)
        self._route_handler = _handle
        logger.debug("Blocking requests matching %s", ", ".join(matcher.patterns))

    # -------------------------------------------------------------------------
    # Page errors
    # -------------------------------------------------------------------------

    def _harvest_errors(self, page: Page) -> None:
        if page.url in ("", "about:blank"):
            return
        try:
            self._page_errors.extend(page.evaluate(DRAIN_ERRORS_SCRIPT) or [])
        except PlaywrightError as exc:
            logger.debug("Could not read page errors from %s: %s", page.url, exc)

    def drain_page_errors(self) -> list[str]:
        """Return and clear page errors seen since the last drain."""
        page = self._require_page()
        self._harvest_errors(page)
        errors, self._page_errors = self._page_errors, []
        return errors


DriverFactory = Callable[[DeviceProfile | None], SessionDriver]


class SessionPool:
    """
    Bounded pool of browser sessions shared by all workers of a run.

    The ceiling is independent from tier concurrency: a tier asking for
    more simulated users than the ceiling simply queues the excess until
    a slot frees up.
    """

    def __init__(self, ceiling: int, driver_factory: DriverFactory):
        if ceiling < 1:
            raise ConfigurationError(f"Session pool ceiling must be >= 1, got {ceiling}")
        self.ceiling = ceiling
        self._driver_factory = driver_factory
        self._slots = threading.BoundedSemaphore(ceiling)
        self._lock = threading.Lock()
        self._in_use = 0
        self._peak = 0

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @property
    def peak(self) -> int:
        """Highest number of sessions that were open at the same time."""
        with self._lock:
            return self._peak

    @contextmanager
    def session(self, device: DeviceProfile | None = None) -> Iterator[SessionDriver]:
        """
        Acquire a slot, open a driver and yield it.

        The driver is closed and the slot released however the block
        exits, including when ``open()`` itself fails.
        """
        self._slots.acquire()
        with self._lock:
            self._in_use += 1
            self._peak = max(self._peak, self._in_use)
        driver: SessionDriver | None = None
        try:
            driver = self._driver_factory(device)
            driver.open()
            yield driver
        finally:
            if driver is not None:
                driver.close()
            with self._lock:
                self._in_use -= 1
            self._slots.release()

    def preflight(self, device: DeviceProfile | None = None) -> None:
        """Open and close one session to prove the browser can start.

        Raises:
            EnvironmentUnavailable: If it cannot.
        """
        with self.session(device):
            pass


def create_session_pool(
    settings: Any,
    *,
    ceiling: int | None = None,
    init_scripts: Sequence[str] = (),
) -> SessionPool:
    """Build a pool of Playwright-backed drivers from runtime settings."""

    def _factory(device: DeviceProfile | None) -> SessionDriver:
        return SessionDriver(
            browser=settings.BROWSER,
            headless=settings.HEADLESS,
            device=device,
            init_scripts=init_scripts,
        )

    return SessionPool(ceiling or settings.POOL_CEILING, _factory)
