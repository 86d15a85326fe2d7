"""
zipIQ archival server - durable store-and-forward for live stream chunks.

This package moves uploaded video chunks from ephemeral upload to
permanent archive:
- A content-addressed blob store holds chunks locally under their CID
- A durable SQLite backlog accepts archival requests
- A single drain loop signs and submits each chunk to the archival
  network (Arweave), rate limited and retried with backoff
- A signing key manager picks a funded wallet for every submission

Architecture:
    ┌─────────────┐     ┌───────────────┐     ┌──────────────────┐
    │   Upload    │────▶│ Content Store │     │  Archival Queue  │
    │  handler    │────────────────────────▶ │  (SQLite backlog)│
    └─────────────┘     └───────────────┘     └────────┬─────────┘
                                                       │ drain loop
                                   ┌───────────────────┼──────────────┐
                                   ▼                                  ▼
                            ┌─────────────┐                   ┌──────────────┐
                            │ Signing Key │                   │ Ledger Client│
                            │   Manager   │                   │  (Arweave)   │
                            └─────────────┘                   └──────────────┘

Invariants:
    - A chunk is identified by {stream_id}_{chunk_index}; enqueueing it twice
      never produces two archival jobs
    - An item is Archived only together with its ArchivedRecord
    - Submissions to the archival network are strictly sequential
    - The backlog survives restarts; in-flight work resumes on startup

How to change safely:
    - Backlog schema changes must migrate existing queue databases
    - Keep transaction tag names stable, external indexers query them
    - Test restart recovery whenever the drain loop changes
"""

from ._version import __version__

__all__ = ["__version__"]
