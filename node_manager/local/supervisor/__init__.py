"""
The Supervisor package.
Manages the lifecycle of the bitcoind and electrs subprocesses.

This package contains the central ProcessManager class and its helper modules,
which together handle launching, output capture, health polling and the
phased shutdown of both nodes.
"""
from .supervisor import ProcessManager

__all__ = ['ProcessManager']
