"""
Typed failures raised by the supervision and update subsystem.

Transient failures (RPC, polling) are absorbed by the supervisor and only show
up as stale status. Structural failures (spawn, install) reach the caller.
"""
from typing import Optional


class NodeManagerError(Exception):
    """Base class for all node manager errors."""


#* --- Process Errors ---
class SpawnError(NodeManagerError):
    """A node binary could not be launched. The node stays idle."""


class ShutdownTimeout(NodeManagerError):
    """A shutdown phase ran out of time and escalation must continue."""

    def __init__(self, role: str, timeout: float):
        super().__init__(f"{role} still alive after {timeout:g}s")
        self.role = role
        self.timeout = timeout


#* --- RPC Errors ---
class RpcError(NodeManagerError):
    """Base class for JSON-RPC failures against the full node."""


class RpcUnreachable(RpcError):
    """Connection refused, reset or timed out."""


class RpcAuthFailed(RpcError):
    """The node rejected the cookie or configured credentials."""


class RpcMethodFailed(RpcError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class RpcMalformedResponse(RpcError):
    """The response body was not a valid JSON-RPC envelope."""


#* --- Update Errors ---
class UpdateError(NodeManagerError):
    """Base class for binary update failures."""


class NoStagingSource(UpdateError):
    """The staging directory does not exist."""

    def __init__(self, path):
        super().__init__(f"No staging directory at '{path}'")
        self.path = path


class StagingSubfolderMissing(NoStagingSource):
    """The build output folder exists but holds no 'binaries/' sub-folder."""


class CopyFailed(UpdateError):
    """Copying or preparing the temporary file failed. The target is untouched."""


class RenameFailed(UpdateError):
    """The final atomic rename failed. The target is untouched."""
