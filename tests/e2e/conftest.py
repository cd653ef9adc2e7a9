"""
Live browser fixtures for end-to-end runs.

A tiny Flask site is served from a daemon thread and real Chromium
sessions are pointed at it.  The whole module is skipped when no
Playwright browser is installed on the machine.

Key Concepts Demonstrated:
- Live server fixture in a background thread
- Health polling before the first test
- Skipping cleanly when the environment cannot launch a browser
"""

from __future__ import annotations

import os
import threading
from collections.abc import Generator

import pytest
from flask import Flask, abort

from loadvitals.config import TestingConfig
from loadvitals.driver import SessionDriver
from loadvitals.errors import EnvironmentUnavailable
from loadvitals.health import wait_for_target

HOST = "127.0.0.1"
PORT = int(os.environ.get("LOADVITALS_E2E_PORT", 5011))

HOME_PAGE = """<!doctype html>
<html>
<head>
  <title>Sample Home</title>
  <script src="/vendor/tracker.js"></script>
</head>
<body>
  <div id="banner"></div>
  <h1>Sample site</h1>
  <img id="hero" src="/static/hero.svg" width="800" height="400" alt="hero">
  <p>Lorem ipsum dolor sit amet, consectetur adipiscing elit.</p>
  <button id="more" onclick="document.getElementById('extra').hidden = false">More</button>
  <p id="extra" hidden>Extra content</p>
  <script>
    // Push the content down once it has painted so a layout shift is recorded
    setTimeout(function () {
      var banner = document.getElementById('banner');
      banner.style.height = '120px';
      banner.textContent = 'Announcement';
    }, 50);
  </script>
</body>
</html>
"""

BROKEN_PAGE = """<!doctype html>
<html>
<head><title>Broken</title></head>
<body>
  <h1>Broken page</h1>
  <script>window.setTimeout(function () { undefinedFunction(); }, 0);</script>
</body>
</html>
"""

HERO_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="800" height="400">'
    '<rect width="800" height="400" fill="#3366cc"/></svg>'
)

TRACKER_JS = "window.__tracked = true;"


def create_site() -> Flask:
    """Flask app serving the pages the browser tests load."""
    site = Flask(__name__)

    @site.route("/")
    def home():
        return HOME_PAGE

    @site.route("/broken/")
    def broken():
        return BROKEN_PAGE

    @site.route("/static/hero.svg")
    def hero():
        return HERO_SVG, 200, {"Content-Type": "image/svg+xml"}

    @site.route("/vendor/tracker.js")
    def tracker():
        return TRACKER_JS, 200, {"Content-Type": "application/javascript"}

    @site.route("/health")
    def health():
        return {"status": "ok"}

    @site.route("/missing/")
    def missing():
        abort(404)

    return site


# -----------------------------------------------------------------------------
# Server Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def live_site() -> Generator[str, None, None]:
    """
    Start the sample site in a background thread.

    Yields:
        str: Base URL of the running site.
    """
    site = create_site()
    server_thread = threading.Thread(
        target=lambda: site.run(host=HOST, port=PORT, use_reloader=False, threaded=True)
    )
    server_thread.daemon = True
    server_thread.start()

    base_url = f"http://{HOST}:{PORT}"
    wait_for_target(f"{base_url}/health", timeout=10, interval=0.1)

    yield base_url

    # Server stops with the test session (daemon thread)


# -----------------------------------------------------------------------------
# Browser Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def browser_available() -> None:
    """Skip browser tests when Chromium cannot be launched here."""
    driver = SessionDriver(browser=TestingConfig.BROWSER, headless=True)
    try:
        driver.open()
    except EnvironmentUnavailable as exc:
        pytest.skip(f"Browser not available: {exc}")
    finally:
        driver.close()


@pytest.fixture
def e2e_settings(tmp_path) -> type[TestingConfig]:
    """Testing settings with reports kept inside the test's temp dir."""
    return type(
        "E2EConfig",
        (TestingConfig,),
        {"REPORT_DIR": str(tmp_path / "reports"), "POOL_CEILING": 2},
    )
