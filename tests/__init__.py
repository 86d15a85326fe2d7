"""
zipIQ Archival Test Suite.

This package contains:
- unit/: Unit tests (no network; SQLite in temporary directories)
- integration/: Integration tests (archival queue end to end, fake HTTP gateway)
"""
