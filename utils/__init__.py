"""Shared helpers: code validation, clock, CLI output formatting."""
