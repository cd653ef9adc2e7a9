"""
Integration test package for loadvitals.

Real thread pools, session pool, executor and run controller are wired
together; only the browser sessions are fakes.  Demonstrates:
- Concurrency bounds under load
- Failure accounting per tier
- Report files written end to end
"""
