"""
Test suite for loadvitals.

This package contains:
- unit/: Pure logic tests with fakes and mocks, no browser
- integration/: Orchestrator and run controller over fake sessions
- e2e/: Real headless Chromium against a local Flask site
"""
