import logging
from typing import Optional

from arena.services.ledger import (
    LedgerError,
    SolanaRpcClient,
    TransactionFailed,
    UnconfirmedTransaction,
    sol_to_lamports,
)
from arena.services.signer import RemoteSigner

logger = logging.getLogger(__name__)


class InsufficientTreasuryBalance(Exception):
    pass


class Treasury:
    """Moves funds out of the treasury through the signing authority."""

    def __init__(self, address: str, ledger: SolanaRpcClient, signer: RemoteSigner):
        self.address = address
        self.ledger = ledger
        self.signer = signer

    async def sol_balance(self) -> float:
        return await self.ledger.get_balance(self.address)

    async def ensure_sol_balance(self, required_sol: float) -> float:
        balance = await self.sol_balance()
        if balance < required_sol:
            raise InsufficientTreasuryBalance(
                f"Insufficient treasury balance: {balance:.6f} SOL available, {required_sol:.6f} SOL required"
            )
        return balance

    async def token_account(self, mint: str) -> Optional[str]:
        return await self.ledger.find_token_account(self.address, mint)

    async def token_balance(self, mint: str) -> int:
        account = await self.token_account(mint)
        if account is None:
            return 0
        return await self.ledger.get_token_account_balance(account)

    async def submit(self, signed_tx_b64: str) -> str:
        signature = await self.ledger.send_transaction(signed_tx_b64)
        try:
            await self.ledger.confirm_transaction(signature)
        except TransactionFailed:
            raise
        except LedgerError as e:
            logger.error("Transaction %s was sent but not confirmed: %s", signature, e)
            raise UnconfirmedTransaction(signature, f"Transaction {signature} not confirmed: {e}") from e
        return signature

    async def sign_and_submit(self, unsigned_tx_b64: str) -> str:
        signed = await self.signer.sign(unsigned_tx_b64)
        return await self.submit(signed)

    async def transfer_sol(self, destination: str, amount_sol: float) -> str:
        lamports = sol_to_lamports(amount_sol)
        if lamports <= 0:
            raise LedgerError(f"Refusing to transfer {amount_sol} SOL")
        await self.ensure_sol_balance(amount_sol)
        blockhash = await self.ledger.get_latest_blockhash()
        signed = await self.signer.build_sol_transfer(destination, lamports, blockhash)
        signature = await self.submit(signed)
        logger.info("Transferred %.6f SOL to %s (%s)", amount_sol, destination, signature)
        return signature

    async def transfer_tokens(self, mint: str, destination_owner: str, raw_amount: int) -> str:
        balance = await self.token_balance(mint)
        if balance < raw_amount:
            raise InsufficientTreasuryBalance(
                f"Insufficient treasury token balance: {balance} available, {raw_amount} required"
            )
        blockhash = await self.ledger.get_latest_blockhash()
        signed = await self.signer.build_token_transfer(mint, destination_owner, raw_amount, blockhash)
        signature = await self.submit(signed)
        logger.info("Transferred %d base units of %s to %s (%s)", raw_amount, mint, destination_owner, signature)
        return signature
