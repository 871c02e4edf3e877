"""Fixtures and utilities shared by tests in tests/*."""
