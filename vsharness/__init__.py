"""Disposable virtual switch harness for agent integration tests."""
