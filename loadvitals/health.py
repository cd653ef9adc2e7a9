"""Readiness checks for the site under test."""

from __future__ import annotations

import logging
import time

import requests

from loadvitals.errors import EnvironmentUnavailable

logger = logging.getLogger(__name__)


def is_target_ready(url: str, timeout: float = 2) -> bool:
    """Return True when *url* answers with a 2xx or 3xx status."""
    try:
        response = requests.get(url, timeout=timeout, allow_redirects=False)
    except requests.RequestException:
        return False
    return response.status_code < 400


def wait_for_target(url: str, timeout: float = 60, interval: float = 1) -> None:
    """
    Poll *url* until it is ready or *timeout* seconds pass.

    Raises:
        EnvironmentUnavailable: If the site never became ready.
    """
    deadline = time.time() + timeout
    while True:
        if is_target_ready(url):
            logger.info("Target %s is ready", url)
            return
        if time.time() >= deadline:
            break
        time.sleep(interval)
    raise EnvironmentUnavailable(f"Target at {url} not reachable after {timeout}s")
