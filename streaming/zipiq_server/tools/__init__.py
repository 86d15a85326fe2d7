"""
CLI tools for zipIQ archival administration.

This module provides command-line tools for:
- queue: Inspect the archival backlog, requeue failed items, clean blobs

Invariants:
    - Tools work offline (no running server required)
    - Operations are idempotent where possible
"""

from .queue_cli import QueueCLI

__all__ = ["QueueCLI"]
