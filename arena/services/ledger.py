import asyncio
import itertools
import logging
from typing import Any, List, Optional

import httpx

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_TOKEN_DECIMALS = 6
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


class LedgerError(Exception):
    pass


class TransactionFailed(LedgerError):
    """The ledger executed the transaction and rejected it."""


class UnconfirmedTransaction(LedgerError):
    """
    The transaction was sent but its outcome is unknown. It may still land, so
    the same funds must not be moved again until it is reconciled.
    """

    def __init__(self, signature: str, message: str):
        super().__init__(message)
        self.signature = signature


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(amount_sol: float) -> int:
    return int(round(amount_sol * LAMPORTS_PER_SOL))


class SolanaRpcClient:
    """Thin async JSON-RPC client for the handful of ledger calls the arena makes."""

    def __init__(
        self,
        rpc_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        commitment: str = "confirmed",
        sleep=asyncio.sleep,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)
        self._sleep = sleep

    async def aclose(self) -> None:
        # A shared client is closed by whoever created it
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            response = await self._client.post(self.rpc_url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise LedgerError(f"{method} failed: {e}") from e
        payload = response.json()
        if payload.get("error"):
            error = payload["error"]
            raise LedgerError(f"{method} failed: {error.get('message', error)}")
        return payload.get("result")

    async def get_balance(self, address: str) -> float:
        """Balance in SOL."""
        result = await self._call("getBalance", [address, {"commitment": self.commitment}])
        return lamports_to_sol(result["value"])

    async def get_transaction(self, signature: str) -> Optional[dict]:
        return await self._call(
            "getTransaction",
            [signature, {"encoding": "json", "commitment": self.commitment, "maxSupportedTransactionVersion": 0}],
        )

    async def find_token_account(self, owner: str, mint: str) -> Optional[str]:
        result = await self._call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        accounts = (result or {}).get("value") or []
        return accounts[0]["pubkey"] if accounts else None

    async def get_token_account_balance(self, token_account: str) -> int:
        """Raw (base unit) token balance."""
        result = await self._call("getTokenAccountBalance", [token_account, {"commitment": self.commitment}])
        return int(result["value"]["amount"])

    async def get_token_decimals(self, mint: str) -> int:
        try:
            result = await self._call("getAccountInfo", [mint, {"encoding": "jsonParsed"}])
            return int(result["value"]["data"]["parsed"]["info"]["decimals"])
        except (LedgerError, KeyError, TypeError) as e:
            logger.warning("Could not read decimals for mint %s, assuming %d: %s", mint, DEFAULT_TOKEN_DECIMALS, e)
            return DEFAULT_TOKEN_DECIMALS

    async def get_latest_blockhash(self) -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    async def send_transaction(self, signed_tx_b64: str) -> str:
        return await self._call(
            "sendTransaction",
            [signed_tx_b64, {"encoding": "base64", "skipPreflight": False, "maxRetries": 3}],
        )

    async def confirm_transaction(self, signature: str, timeout_sec: float = 60.0, poll_interval: float = 2.0) -> None:
        waited = 0.0
        while waited < timeout_sec:
            result = await self._call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
            status = (result or {}).get("value", [None])[0]
            if status:
                if status.get("err"):
                    raise TransactionFailed(f"Transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            await self._sleep(poll_interval)
            waited += poll_interval
        raise LedgerError(f"Transaction {signature} not confirmed after {timeout_sec:.0f}s")
