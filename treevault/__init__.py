"""
TreeVault — Folder hierarchy metadata and access control.

Owns the structural truth of a file/folder tree whose bytes live in an
external blob store: containment, ownership, grants and their propagation,
and the three-tier authorization decision.
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "hierarchy", "security", "storage"]
