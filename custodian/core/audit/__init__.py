"""
Per-tenant, append-only, hash-linked audit ledger.

Entries are never updated or deleted. Integrity is checked by walking the
chain from the first entry and recomputing every hash.
"""

from __future__ import annotations
