"""Unit tests for loadvitals components."""
