"""Dataset runner test suite.

Test organization:
- unit/: module-level tests for extraction, the upstream client,
  pagination, batching, merge, the execution store, the orchestrator
  and the polling contract

The upstream API is faked with httpx.MockTransport (see conftest.py).
"""
