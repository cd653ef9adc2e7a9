"""
Unit tests for the session driver and session pool.

Playwright is replaced with ``MagicMock`` objects by patching
``sync_playwright``, so these tests never start a browser.

Key SDET Concepts Demonstrated:
- Patching a third-party entry point
- Mocking side effects (exceptions) to test error translation
- Verifying mock calls
"""

import logging
import signal
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from loadvitals.config import TestingConfig
from loadvitals.driver import (
    ERROR_CAPTURE_SCRIPT,
    InterceptAction,
    RequestMatcher,
    SessionDriver,
    SessionPool,
    create_session_pool,
)
from loadvitals.errors import (
    ConfigurationError,
    EnvironmentUnavailable,
    NavigationError,
    NavigationTimeout,
    ScriptError,
    SessionClosed,
    StepError,
)
from loadvitals.models import DEVICE_PROFILES
from tests.fakes import FakeDriver, unavailable_driver


pytestmark = pytest.mark.unit


@pytest.fixture
def playwright_mocks():
    """Patch ``sync_playwright`` and expose the mocked browser objects."""
    with patch("loadvitals.driver.sync_playwright") as sync_pw:
        pw = MagicMock()
        sync_pw.return_value.start.return_value = pw
        browser = pw.chromium.launch.return_value
        context = browser.new_context.return_value
        page = context.new_page.return_value
        page.url = "about:blank"
        yield SimpleNamespace(sync=sync_pw, playwright=pw, browser=browser,
                              context=context, page=page)


@pytest.fixture
def open_driver(playwright_mocks):
    driver = SessionDriver(browser="chromium", headless=True)
    driver.open()
    yield driver
    driver.close()


class TestOpenAndClose:

    def test_open_creates_isolated_context(self, playwright_mocks):
        # Arrange
        driver = SessionDriver(device=DEVICE_PROFILES["mobile"], init_scripts=("observer();",))

        # Act
        handle = driver.open()

        # Assert
        playwright_mocks.playwright.chromium.launch.assert_called_once_with(headless=True)
        kwargs = playwright_mocks.browser.new_context.call_args.kwargs
        assert kwargs["ignore_https_errors"] is True
        assert kwargs["viewport"] == {"width": 375, "height": 667}
        scripts = [c.kwargs["script"] for c in playwright_mocks.context.add_init_script.call_args_list]
        assert scripts == [ERROR_CAPTURE_SCRIPT, "observer();"]
        assert handle.device == "mobile"
        assert driver.is_open

    def test_open_twice_returns_same_handle(self, playwright_mocks):
        driver = SessionDriver()

        assert driver.open() is driver.open()
        playwright_mocks.sync.return_value.start.assert_called_once()

    def test_browser_start_failure_is_environment_error(self, playwright_mocks):
        # Arrange
        playwright_mocks.playwright.chromium.launch.side_effect = PlaywrightError(
            "Executable doesn't exist"
        )
        driver = SessionDriver()

        # Act / Assert
        with pytest.raises(EnvironmentUnavailable, match="chromium"):
            driver.open()
        playwright_mocks.playwright.stop.assert_called_once()

    def test_close_is_idempotent(self, playwright_mocks):
        driver = SessionDriver()
        driver.open()

        driver.close()
        driver.close()

        playwright_mocks.context.close.assert_called_once()
        playwright_mocks.browser.close.assert_called_once()
        playwright_mocks.playwright.stop.assert_called_once()

    def test_calls_after_close_raise_session_closed(self, open_driver):
        open_driver.close()

        with pytest.raises(SessionClosed):
            open_driver.navigate("http://localhost/", 1000)
        with pytest.raises(SessionClosed):
            open_driver.open()

    def test_calls_before_open_raise_session_closed(self, playwright_mocks):
        with pytest.raises(SessionClosed, match="not been opened"):
            SessionDriver().evaluate("() => 1")

    def test_unsupported_browser(self):
        with pytest.raises(ConfigurationError, match="netscape"):
            SessionDriver(browser="netscape")


class TestNavigate:

    def test_success_returns_status_and_elapsed(self, open_driver, playwright_mocks):
        playwright_mocks.page.goto.return_value.status = 200

        result = open_driver.navigate("http://localhost:1313/", 5000)

        playwright_mocks.page.goto.assert_called_once_with(
            "http://localhost:1313/", wait_until="networkidle", timeout=5000
        )
        assert result.status == 200
        assert result.elapsed_ms >= 0

    def test_timeout(self, open_driver, playwright_mocks):
        playwright_mocks.page.goto.side_effect = PlaywrightTimeoutError("Timeout 5000ms exceeded")

        with pytest.raises(NavigationTimeout, match="exceeded 5000ms"):
            open_driver.navigate("http://localhost:1313/", 5000)

    def test_dns_failure(self, open_driver, playwright_mocks):
        playwright_mocks.page.goto.side_effect = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")

        with pytest.raises(NavigationError, match="ERR_NAME_NOT_RESOLVED"):
            open_driver.navigate("http://nowhere.invalid/", 5000)

    @pytest.mark.parametrize("status", [404, 500])
    def test_error_status(self, open_driver, playwright_mocks, status):
        playwright_mocks.page.goto.return_value.status = status

        with pytest.raises(NavigationError, match=f"HTTP {status}"):
            open_driver.navigate("http://localhost:1313/missing/", 5000)


class TestInteraction:

    def test_evaluate_failure_is_script_error(self, open_driver, playwright_mocks):
        playwright_mocks.page.evaluate.side_effect = PlaywrightError("ReferenceError: foo")

        with pytest.raises(ScriptError, match="ReferenceError"):
            open_driver.evaluate("() => foo")

    def test_click_timeout_is_step_error(self, open_driver, playwright_mocks):
        playwright_mocks.page.click.side_effect = PlaywrightTimeoutError("Timeout")

        with pytest.raises(StepError, match="#missing"):
            open_driver.click("#missing", 1000)

    def test_drain_page_errors_polls_then_clears(self, open_driver, playwright_mocks):
        # Arrange
        playwright_mocks.page.url = "http://localhost:1313/"
        playwright_mocks.page.evaluate.side_effect = [["Uncaught TypeError"], []]

        # Act
        first = open_driver.drain_page_errors()
        second = open_driver.drain_page_errors()

        # Assert
        assert first == ["Uncaught TypeError"]
        assert second == []


class TestInterception:

    @staticmethod
    def _route(url: str) -> MagicMock:
        route = MagicMock()
        route.request.url = url
        return route

    def test_block_aborts_matching_requests_only(self, open_driver, playwright_mocks):
        # Arrange
        open_driver.intercept_requests(["googletagmanager.com"], InterceptAction.BLOCK)
        pattern, handler = playwright_mocks.context.route.call_args.args
        blocked = self._route("https://www.googletagmanager.com/gtm.js?id=GTM-1")
        allowed = self._route("http://localhost:1313/style.css")

        # Act
        handler(blocked)
        handler(allowed)

        # Assert
        assert pattern == "**/*"
        blocked.abort.assert_called_once()
        blocked.continue_.assert_not_called()
        allowed.continue_.assert_called_once()

    def test_reinstalling_replaces_previous_filter(self, open_driver, playwright_mocks):
        open_driver.intercept_requests(["a.example"])
        _, first_handler = playwright_mocks.context.route.call_args.args

        open_driver.intercept_requests(["b.example"])

        playwright_mocks.context.unroute.assert_called_once_with("**/*", first_handler)
        assert playwright_mocks.context.route.call_count == 2

    def test_allow_removes_filter(self, open_driver, playwright_mocks):
        open_driver.intercept_requests(["a.example"])

        open_driver.intercept_requests([], InterceptAction.ALLOW)

        playwright_mocks.context.unroute.assert_called_once()
        assert playwright_mocks.context.route.call_count == 1

    def test_missing_context_raises_session_closed(self, open_driver, playwright_mocks):
        open_driver._context = None

        with pytest.raises(SessionClosed, match="no browser context"):
            open_driver.intercept_requests(["a.example"])
        playwright_mocks.context.route.assert_not_called()

    def test_intercept_after_close_raises_session_closed(self, open_driver):
        open_driver.close()

        with pytest.raises(SessionClosed):
            open_driver.intercept_requests(["a.example"])


class TestAbort:

    KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)

    @pytest.fixture
    def browser_pid(self, playwright_mocks):
        cdp = playwright_mocks.browser.new_browser_cdp_session.return_value
        cdp.send.return_value = {
            "processInfo": [{"type": "renderer", "id": 4300}, {"type": "browser", "id": 4242}]
        }
        return 4242

    def test_abort_kills_browser_process(self, playwright_mocks, browser_pid):
        # Arrange
        driver = SessionDriver(browser="chromium")
        driver.open()

        # Act
        with patch("loadvitals.driver.os.kill") as kill:
            driver.abort()

        # Assert
        kill.assert_called_once_with(browser_pid, self.KILL_SIGNAL)
        assert driver.aborted
        playwright_mocks.browser.new_browser_cdp_session.return_value.send.assert_called_once_with(
            "SystemInfo.getProcessInfo"
        )

    def test_calls_after_abort_raise_session_closed(self, playwright_mocks, browser_pid):
        driver = SessionDriver()
        driver.open()

        with patch("loadvitals.driver.os.kill"):
            driver.abort()

        with pytest.raises(SessionClosed, match="force-closed"):
            driver.scroll()

    def test_process_already_gone_is_ignored(self, playwright_mocks, browser_pid):
        driver = SessionDriver()
        driver.open()

        with patch("loadvitals.driver.os.kill", side_effect=ProcessLookupError("no such process")):
            driver.abort()

        assert driver.aborted

    def test_unknown_pid_logs_warning(self, playwright_mocks, caplog):
        # Arrange: only Chromium exposes its process id
        driver = SessionDriver(browser="firefox")
        driver.open()

        # Act
        with patch("loadvitals.driver.os.kill") as kill, caplog.at_level(logging.WARNING):
            driver.abort()

        # Assert
        kill.assert_not_called()
        assert "process id unknown" in caplog.text

    def test_cdp_failure_leaves_pid_unknown(self, playwright_mocks):
        playwright_mocks.browser.new_browser_cdp_session.side_effect = PlaywrightError("no cdp")
        driver = SessionDriver()
        driver.open()

        with patch("loadvitals.driver.os.kill") as kill:
            driver.abort()

        kill.assert_not_called()


class TestRequestMatcher:

    @pytest.mark.parametrize(
        "patterns, url, expected",
        [
            (["googlesyndication.com"], "https://pagead2.googlesyndication.com/ads.js", True),
            (["connect.facebook.net"], "http://localhost:1313/", False),
            (["*.google.com"], "https://cse.google.com/cse.js?cx=1", True),
            (["*/gtm.js*"], "https://www.googletagmanager.com/gtm.js?id=1", True),
            ([], "https://cse.google.com/", False),
        ],
    )
    def test_matches(self, patterns, url, expected):
        assert RequestMatcher.of(patterns).matches(url) is expected

    def test_single_string_pattern(self):
        assert RequestMatcher.of("example.com").patterns == ("example.com",)


class TestSessionPool:

    def test_ceiling_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            SessionPool(0, lambda device=None: FakeDriver(device=device))

    def test_session_closes_and_releases_on_error(self):
        # Arrange
        drivers = []

        def factory(device=None):
            driver = FakeDriver()
            drivers.append(driver)
            return driver

        pool = SessionPool(1, factory)

        # Act
        with pytest.raises(RuntimeError):
            with pool.session():
                raise RuntimeError("worker bug")

        # Assert
        assert drivers[0].closed is True
        assert pool.in_use == 0
        with pool.session() as driver:
            assert driver.opened

    def test_open_failure_releases_slot(self):
        pool = SessionPool(1, unavailable_driver)

        with pytest.raises(EnvironmentUnavailable):
            pool.preflight()

        assert pool.in_use == 0

    def test_peak_never_exceeds_ceiling(self):
        # Arrange
        pool = SessionPool(2, lambda device=None: FakeDriver(device=device))
        release = threading.Event()
        entered = threading.Semaphore(0)

        def worker():
            with pool.session():
                entered.release()
                release.wait(timeout=5)

        threads = [threading.Thread(target=worker) for _ in range(5)]

        # Act
        for thread in threads:
            thread.start()
        entered.acquire(timeout=5)
        entered.acquire(timeout=5)
        in_use_while_blocked = pool.in_use
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        # Assert
        assert in_use_while_blocked == 2
        assert pool.peak == 2
        assert pool.in_use == 0

    def test_create_session_pool_uses_settings(self, playwright_mocks):
        pool = create_session_pool(TestingConfig, init_scripts=("observer();",))

        with pool.session(DEVICE_PROFILES["tablet"]) as driver:
            assert driver.browser_name == TestingConfig.BROWSER
            assert driver.device.name == "tablet"

        assert pool.ceiling == TestingConfig.POOL_CEILING
