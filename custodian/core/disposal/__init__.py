"""
Disposal strategies and the storage seam they act on.

Physical deletion of record bytes happens only in this package.
"""

from __future__ import annotations
