"""
loadvitals: browser-driven load and performance validation.

Drives many concurrent headless-browser sessions against a running site,
measures page-load and rendering metrics in each, checks the aggregated
values against a threshold policy and writes a single report per run.
"""

__version__ = "0.1.0"
