import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class SignerError(Exception):
    pass


class RemoteSigner:
    """
    Client for the treasury signing authority.

    The authority holds the treasury key. It builds and signs SOL and token
    transfers out of the treasury and co-signs transactions prepared elsewhere
    (exchange swaps). Every call returns a base64 signed transaction ready to
    submit to the ledger; nothing here submits on its own.
    """

    def __init__(self, base_url: str, api_key: str, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def aclose(self) -> None:
        # A shared client is closed by whoever created it
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, body: dict) -> str:
        try:
            response = await self._client.post(f"{self.base_url}{path}", json=body, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SignerError(f"Signer request {path} failed: {e}") from e
        transaction = response.json().get("transaction")
        if not transaction:
            raise SignerError(f"Signer returned no transaction for {path}")
        return transaction

    async def build_sol_transfer(self, destination: str, lamports: int, recent_blockhash: str) -> str:
        return await self._post(
            "/transactions/sol-transfer",
            {"destination": destination, "lamports": lamports, "recentBlockhash": recent_blockhash},
        )

    async def build_token_transfer(self, mint: str, destination_owner: str, raw_amount: int, recent_blockhash: str) -> str:
        # The authority creates the destination's associated token account when missing
        return await self._post(
            "/transactions/token-transfer",
            {
                "mint": mint,
                "destinationOwner": destination_owner,
                "amount": str(raw_amount),
                "recentBlockhash": recent_blockhash,
            },
        )

    async def sign(self, transaction_b64: str) -> str:
        return await self._post("/transactions/sign", {"transaction": transaction_b64})
