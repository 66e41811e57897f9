"""
Escapement Test Suite

Unit tests for each pipeline stage plus coordinator and CLI tests that drive
whole plan/apply runs against the in-memory and local providers.
"""
