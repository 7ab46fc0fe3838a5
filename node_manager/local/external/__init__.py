"""
This module initializes the binary update system.
It exposes the `BinaryUpdater` class from the `updater` module.
"""

from .updater import BinaryUpdater, UpdateReport

__all__ = ["BinaryUpdater", "UpdateReport"]
