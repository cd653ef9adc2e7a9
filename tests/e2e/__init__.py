"""
Browser test package for loadvitals.

These tests launch headless Chromium through Playwright and measure a
small Flask site served from a background thread.
"""
