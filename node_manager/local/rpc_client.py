"""
JSON-RPC client for the full node (bitcoind).

Authenticates with the `.cookie` file bitcoind writes on every start, read
fresh on each call. When no cookie exists, explicitly configured credentials are
used, then `rpcuser`/`rpcpassword` from bitcoin.conf, then the fallback pair.
"""
import logging
import requests
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from node_manager.local.errors import (
    RpcAuthFailed,
    RpcMalformedResponse,
    RpcMethodFailed,
    RpcUnreachable,
)
from node_manager.local.models import BlockchainInfo

log = logging.getLogger(__name__)

COOKIE_LOCATIONS = (".cookie", "mainnet/.cookie")


def read_bitcoin_conf(data_dir: Path) -> Dict[str, str]:
    """
    Parses the top-level `key=value` lines of bitcoin.conf.

    :param data_dir: The full node data directory.
    :return: A dictionary of settings; empty if the file is missing or unreadable.
    """
    values: Dict[str, str] = {}
    try:
        text = (Path(data_dir) / "bitcoin.conf").read_text(encoding="utf-8")
    except (IOError, OSError):
        return values
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values.setdefault(key.strip(), value.strip())
    return values


def read_cookie(data_dir: Path) -> Optional[Tuple[str, str]]:
    """Returns the (user, token) pair from the first readable cookie file, if any."""
    for relative in COOKIE_LOCATIONS:
        cookie_path = Path(data_dir) / relative
        try:
            contents = cookie_path.read_text(encoding="utf-8").strip()
        except (IOError, OSError):
            continue
        user, sep, token = contents.partition(":")
        if sep:
            return user, token
        log.warning(f"Ignoring malformed cookie file '{cookie_path}'")
    return None


class RpcClient:
    """Issues JSON-RPC 1.0 requests against bitcoind's HTTP endpoint."""

    def __init__(
        self,
        data_dir: Path,
        host: str = "127.0.0.1",
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5,
        request_id: str = "bnm",
        default_port: int = 8332,
        fallback_credentials: Tuple[str, str] = ("bitcoin", "bitcoinrpc"),
    ):
        """
        :param data_dir: The full node data directory (cookie and bitcoin.conf location).
        :param host: RPC host.
        :param port: Explicit RPC port; otherwise `rpcport` from bitcoin.conf or `default_port`.
        :param user: Explicit RPC user used when no cookie file exists.
        :param password: Explicit RPC password used when no cookie file exists.
        :param timeout: Per-call timeout in seconds.
        """
        self.data_dir = Path(data_dir)
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout
        self.request_id = request_id
        self.default_port = default_port
        self.fallback_credentials = fallback_credentials

    @classmethod
    def from_config(cls, config: Any) -> "RpcClient":
        """Builds a client from the effective settings object."""
        return cls(
            data_dir=config.BITCOIN_DATA_DIR,
            host=config.RPC_HOST,
            timeout=config.RPC_TIMEOUT,
            request_id=config.RPC_REQUEST_ID,
            default_port=config.RPC_DEFAULT_PORT,
            fallback_credentials=(config.RPC_FALLBACK_USER, config.RPC_FALLBACK_PASSWORD),
        )

    #* --- Endpoint & Credentials ---
    def resolve_port(self, conf: Optional[Dict[str, str]] = None) -> int:
        if self.port is not None:
            return self.port
        conf = read_bitcoin_conf(self.data_dir) if conf is None else conf
        try:
            return int(conf["rpcport"])
        except (KeyError, ValueError):
            return self.default_port

    def resolve_auth(self, conf: Optional[Dict[str, str]] = None) -> Tuple[str, str]:
        """Picks the credentials for the next call; the cookie is read fresh every time."""
        cookie = read_cookie(self.data_dir)
        if cookie:
            return cookie
        if self.user is not None and self.password is not None:
            return self.user, self.password
        conf = read_bitcoin_conf(self.data_dir) if conf is None else conf
        if "rpcuser" in conf and "rpcpassword" in conf:
            return conf["rpcuser"], conf["rpcpassword"]
        return self.fallback_credentials

    #* --- Calls ---
    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Performs a single JSON-RPC call.

        :param method: The RPC method name.
        :param params: Positional parameters.
        :return: The `result` member of the response.
        :raises RpcUnreachable: On connection failure or timeout.
        :raises RpcAuthFailed: On HTTP 401/403.
        :raises RpcMethodFailed: When the response carries an error object.
        :raises RpcMalformedResponse: When the body is not a JSON-RPC envelope.
        """
        conf = read_bitcoin_conf(self.data_dir)
        url = f"http://{self.host}:{self.resolve_port(conf)}/"
        payload = {
            "jsonrpc": "1.0",
            "id": self.request_id,
            "method": method,
            "params": params or [],
        }
        try:
            response = requests.post(url, json=payload, auth=self.resolve_auth(conf), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RpcUnreachable(f"{method}: {url} unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise RpcAuthFailed(
                f"RPC authentication failed ({response.status_code}). "
                "Check bitcoin.conf credentials or the .cookie file."
            )

        # bitcoind reports method errors as HTTP 4xx/5xx with a JSON body.
        try:
            body = response.json()
        except ValueError as e:
            raise RpcMalformedResponse(f"{method}: non-JSON response (HTTP {response.status_code})") from e
        if not isinstance(body, dict) or "result" not in body:
            raise RpcMalformedResponse(f"{method}: response is not a JSON-RPC envelope")

        error = body.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise RpcMethodFailed(error.get("code"), str(error.get("message", "")))
            raise RpcMethodFailed(None, str(error))
        return body["result"]

    def get_blockchain_info(self) -> BlockchainInfo:
        """Calls `getblockchaininfo` and extracts the fields the health view needs."""
        result = self.call("getblockchaininfo")
        if not isinstance(result, dict):
            raise RpcMalformedResponse("getblockchaininfo: result is not an object")
        try:
            return BlockchainInfo(
                blocks=int(result.get("blocks", 0)),
                headers=int(result.get("headers", 0)),
                verification_progress=float(result.get("verificationprogress", 0.0)),
                chain=str(result.get("chain", "")),
                initial_block_download=bool(result.get("initialblockdownload", True)),
            )
        except (TypeError, ValueError) as e:
            raise RpcMalformedResponse(f"getblockchaininfo: unexpected field types: {e}") from e

    def stop(self) -> bool:
        """
        Asks the node to shut down via the `stop` method.

        Does not wait for the process to exit.

        :return: True if the node accepted the request.
        """
        try:
            reply = self.call("stop")
            log.info(f"bitcoind accepted RPC stop: {reply}")
            return True
        except RpcUnreachable as e:
            log.warning(f"RPC stop failed, node unreachable: {e}")
        except RpcAuthFailed as e:
            log.warning(f"RPC stop rejected: {e}")
        except (RpcMethodFailed, RpcMalformedResponse) as e:
            log.warning(f"RPC stop failed: {e}")
        return False
