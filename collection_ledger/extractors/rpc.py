import itertools
from typing import Any, Dict, List, Optional, Sequence

from collection_ledger.utils.http import HttpClient


class RpcError(RuntimeError):
    def __init__(self, method: str, code: Optional[int], message: str) -> None:
        self.method = method
        self.code = code
        self.message = message
        super().__init__(f"RPC {method} error {code}: {message}")


def to_hex(value: int) -> str:
    return hex(value)


def from_hex(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.startswith("0x") else int(text)


class RpcClient:
    """Minimal EVM JSON-RPC client over :class:`HttpClient`."""

    def __init__(self, http: HttpClient) -> None:
        self.http = http
        self._ids = itertools.count(1)

    @classmethod
    def from_url(cls, rpc_url: str, rate_limit_per_second: float = 10.0, max_retries: int = 3) -> "RpcClient":
        return cls(HttpClient(rpc_url, rate_limit_per_second=rate_limit_per_second, max_retries=max_retries))

    def call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        body = self.http.post("", payload)
        if not isinstance(body, dict):
            raise RpcError(method, None, f"unexpected response: {body!r}")
        if body.get("error"):
            error = body["error"]
            if isinstance(error, dict):
                raise RpcError(method, error.get("code"), str(error.get("message", "")))
            raise RpcError(method, None, str(error))
        return body.get("result")

    def _require(self, method: str, params: List[Any], what: str) -> Dict[str, Any]:
        result = self.call(method, params)
        if result is None:
            raise RpcError(method, None, f"{what} not found")
        return result

    def block_number(self) -> int:
        return from_hex(self.call("eth_blockNumber", []))

    def safe_block_number(self, confirmations: int = 0) -> int:
        return max(self.block_number() - max(confirmations, 0), 0)

    def get_logs(self, address: str, topics: Sequence[Optional[str]], from_block: int, to_block: int) -> List[Dict[str, Any]]:
        params = {
            "address": address,
            "topics": list(topics),
            "fromBlock": to_hex(from_block),
            "toBlock": to_hex(to_block),
        }
        result = self.call("eth_getLogs", [params])
        return result or []

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        return self._require("eth_getTransactionByHash", [tx_hash], f"transaction {tx_hash}")

    def get_transaction_receipt(self, tx_hash: str) -> Dict[str, Any]:
        return self._require("eth_getTransactionReceipt", [tx_hash], f"receipt {tx_hash}")

    def get_block(self, block_number: int) -> Dict[str, Any]:
        return self._require("eth_getBlockByNumber", [to_hex(block_number), False], f"block {block_number}")
