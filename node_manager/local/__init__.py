"""
Local package for the Bitcoin Node Manager.

This package provides the merged runtime configuration through the
effective_settings object, the shared value types and the typed errors.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
