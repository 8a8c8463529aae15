"""Library Catalog - Services Package

This package contains the modules that talk to the outside world:
- HTTP client for the remote sync endpoint
- Timer scheduling used for debounced pushes
- Sync coordinator (push/pull state machine)
"""
