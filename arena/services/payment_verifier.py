import logging
from typing import List

from arena.core.errors import failed_precondition
from arena.services.ledger import LedgerError, SolanaRpcClient, lamports_to_sol, sol_to_lamports

logger = logging.getLogger(__name__)


def _account_keys(transaction: dict) -> List[str]:
    message = transaction.get("transaction", {}).get("message", {})
    keys = []
    for key in message.get("accountKeys", []):
        # jsonParsed encoding returns objects, json encoding plain strings
        keys.append(key["pubkey"] if isinstance(key, dict) else key)
    loaded = transaction.get("meta", {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable", []))
    keys.extend(loaded.get("readonly", []))
    return keys


class PaymentVerifier:
    def __init__(self, ledger: SolanaRpcClient, treasury_address: str, tolerance: float = 0.95):
        self.ledger = ledger
        self.treasury_address = treasury_address
        self.tolerance = tolerance

    async def verify(self, signature: str, payer: str, expected_sol: float) -> float:
        """
        Check that `signature` is a successful transaction involving `payer`
        which raised the treasury balance by at least tolerance * expected_sol.
        Returns the amount received in SOL.
        """
        try:
            transaction = await self.ledger.get_transaction(signature)
        except LedgerError as e:
            logger.warning("Could not fetch transaction %s: %s", signature, e)
            raise failed_precondition("Could not verify payment transaction", signature=signature)
        if not transaction:
            raise failed_precondition("Payment transaction not found or not confirmed", signature=signature)

        meta = transaction.get("meta") or {}
        if meta.get("err"):
            raise failed_precondition("Payment transaction failed on chain", signature=signature)

        keys = _account_keys(transaction)
        if payer not in keys:
            raise failed_precondition("Payment transaction was not made by this player", signature=signature)
        if self.treasury_address not in keys:
            raise failed_precondition("Payment transaction did not pay the treasury", signature=signature)

        index = keys.index(self.treasury_address)
        pre, post = meta.get("preBalances", []), meta.get("postBalances", [])
        if index >= len(pre) or index >= len(post):
            raise failed_precondition("Payment transaction has no treasury balance change", signature=signature)
        received = post[index] - pre[index]
        required = int(sol_to_lamports(expected_sol) * self.tolerance)
        if received < required:
            raise failed_precondition(
                "Payment amount too low",
                received=lamports_to_sol(received),
                expected=expected_sol,
            )
        return lamports_to_sol(received)
