"""Shared utilities: structured logging setup and async subprocess helpers."""
