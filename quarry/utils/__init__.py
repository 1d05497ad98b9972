"""
Quarry Utils Package
====================

Environment management.
"""

from __future__ import annotations

from quarry.utils.env import Env

__all__ = ["Env"]
