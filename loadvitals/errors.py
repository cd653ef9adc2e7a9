"""
Exception taxonomy for load runs.

Only two families stop a run: :class:`EnvironmentUnavailable` (the browser
pool or the target cannot be reached) and :class:`ConfigurationError` (the
scenario or policy is malformed).  Everything under :class:`ExecutionError`
is raised by the session driver and caught by the scenario executor, which
turns it into :class:`~loadvitals.models.ExecutionFailure` data.
"""

from __future__ import annotations


class LoadVitalsError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(LoadVitalsError):
    """The run definition is invalid; raised before any session opens."""


class EnvironmentUnavailable(LoadVitalsError):
    """The browser could not be started or the target is not serving."""


class ExecutionError(LoadVitalsError):
    """A step of a single scenario run failed."""


class SessionClosed(ExecutionError):
    """A driver method was called on a session that is not open."""


class NavigationTimeout(ExecutionError):
    """Navigation did not reach network idle within its wait budget."""

    def __init__(self, url: str, max_wait_ms: float):
        super().__init__(f"Navigation to {url} exceeded {max_wait_ms:.0f}ms")
        self.url = url
        self.max_wait_ms = max_wait_ms


class NavigationError(ExecutionError):
    """Navigation failed at the network level or returned an error status."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Navigation to {url} failed: {reason}")
        self.url = url
        self.reason = reason


class ScriptError(ExecutionError):
    """In-page JavaScript threw while being evaluated."""


class StepError(ExecutionError):
    """An interaction step (click, scroll, ...) could not be performed."""


class DeadlineExceeded(ExecutionError):
    """A scenario run used up its overall deadline."""
