"""Read-only JSON-RPC access to a Bitcoin-family node.

:class:`~clawdbot_overlay.scanner.OverlayScanner` is the only consumer: it
needs the chain tip, blocks with decoded transactions, and single verbose
transactions.  Nothing here signs or broadcasts.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

import requests
from requests import RequestException, Response

from .config import RPCConfig

logger = logging.getLogger(__name__)


class RPCError(RuntimeError):
    """The node answered with a JSON-RPC ``error`` object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class RPCTransportError(RuntimeError):
    """No usable JSON-RPC answer came back."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_from_body(body: Any) -> Optional[RPCError]:
    if isinstance(body, dict) and body.get("error"):
        error = body["error"]
        return RPCError(error.get("code", -1), error.get("message", "unknown"))
    return None


class NodeRPCClient:
    """Fetch chain data for the scanner over one pooled HTTP session."""

    def __init__(self, config: RPCConfig, timeout: float = 30) -> None:
        self.config = config
        self.timeout = timeout
        self._session = requests.Session()

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        request = {"jsonrpc": "1.0", "id": uuid.uuid4().hex, "method": method, "params": params or []}
        logger.debug("-> %s %s", method, request["params"])
        try:
            response = self._session.post(
                self.config.base_url,
                data=json.dumps(request),
                headers={"content-type": "application/json"},
                auth=(self.config.user, self.config.password),
                timeout=self.timeout,
            )
        except RequestException as exc:
            logger.error("Node at %s unreachable: %s", self.config.base_url, exc)
            raise RPCTransportError(
                f"Could not reach {self.config.base_url}; check OVERLAY_RPC_* or the rpc section "
                "of ~/.clawdbot-overlay.yaml"
            ) from exc

        self._raise_for_status(response)
        try:
            body = response.json()
        except ValueError as exc:
            raise RPCTransportError(f"{method} answered with non-JSON content") from exc
        error = _error_from_body(body)
        if error is not None:
            raise error
        return body.get("result")

    def _raise_for_status(self, response: Response) -> None:
        if response.ok:
            return
        # JSON-RPC failures arrive as HTTP 500 with the error in the body.
        try:
            error = _error_from_body(response.json())
        except ValueError:
            error = None
        if error is not None:
            raise error

        logger.error("Node returned HTTP %s", response.status_code)
        hint = ""
        if response.status_code == 401:
            hint = " (Unauthorized: check OVERLAY_RPC_USER / OVERLAY_RPC_PASSWORD)"
        raise RPCTransportError(f"HTTP {response.status_code}{hint}", status_code=response.status_code)

    def get_best_height(self) -> int:
        return int(self.call("getblockcount"))

    def getblock_by_height(self, height: int) -> Dict[str, Any]:
        """Block at ``height`` with decoded transactions (verbosity 2)."""

        block_hash = self.call("getblockhash", [height])
        return self.call("getblock", [block_hash, 2])

    def get_raw_transaction(self, txid: str, verbose: bool = False) -> Any:
        return self.call("getrawtransaction", [txid, int(verbose)])


__all__ = ["NodeRPCClient", "RPCError", "RPCTransportError"]
