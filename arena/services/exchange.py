import logging
from typing import Optional

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ExchangeError(Exception):
    pass


class Quote(BaseModel):
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float = 0.0
    raw: dict = Field(default_factory=dict) # echoed back to the swap endpoint


class JupiterExchange:
    """Quote and swap-transaction client for a Jupiter v6 compatible aggregator."""

    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        # A shared client is closed by whoever created it
        if self._owns_client:
            await self._client.aclose()

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int = 300) -> Quote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }
        try:
            response = await self._client.get(f"{self.base_url}/quote", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ExchangeError(f"Quote request failed: {e}") from e
        if "outAmount" not in data:
            raise ExchangeError(f"Quote response without outAmount: {data.get('error', data)}")
        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(data.get("inAmount", amount)),
            out_amount=int(data["outAmount"]),
            price_impact_pct=float(data.get("priceImpactPct") or 0),
            raw=data,
        )

    async def build_swap_transaction(
        self, quote: Quote, user_public_key: str, destination_token_account: Optional[str] = None
    ) -> Optional[str]:
        """Unsigned base64 swap transaction, or None when the aggregator offers none."""
        body = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        if destination_token_account:
            body["destinationTokenAccount"] = destination_token_account
        try:
            response = await self._client.post(f"{self.base_url}/swap", json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExchangeError(f"Swap request failed: {e}") from e
        return response.json().get("swapTransaction")
