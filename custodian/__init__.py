"""
Custodian: legal-retention enforcement with a tamper-evident audit ledger.
"""

from __future__ import annotations

__version__ = "0.3.0"
