import asyncio
import logging
from typing import Callable, List, NamedTuple, Optional

from fastapi.concurrency import run_in_threadpool

from arena.core.errors import already_exists, failed_precondition
from arena.models.match_model import Match, MatchStatus, PlayerStatus, Prize, utcnow
from arena.schemas.match_schemas import (
    FailedTransfer,
    PaymentSummary,
    PlayerPaymentSummary,
    RetryTransferResponse,
)
from arena.services.exchange import ExchangeError, JupiterExchange
from arena.services.ledger import LedgerError, SolanaRpcClient, UnconfirmedTransaction, sol_to_lamports
from arena.services.match_store import MatchStore
from arena.services.signer import SignerError
from arena.services.treasury import InsufficientTreasuryBalance, Treasury

logger = logging.getLogger(__name__)

# Anything that can go wrong while talking to the ledger, signer or exchange
EXTERNAL_ERRORS = (LedgerError, SignerError, ExchangeError, InsufficientTreasuryBalance)


class TransferResult(NamedTuple):
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    unconfirmed: bool = False


def format_amount(raw_amount: int, decimals: int) -> str:
    return f"{raw_amount / 10 ** decimals:,.2f}"


def is_balance_issue(message: Optional[str]) -> bool:
    text = (message or "").lower()
    return "insufficient" in text and ("balance" in text or "funds" in text)


class SettlementOrchestrator:
    def __init__(
        self,
        store: MatchStore,
        treasury: Treasury,
        exchange: JupiterExchange,
        ledger: SolanaRpcClient,
        sol_mint: str,
        slippage_bps: int = 300,
        fee_buffer_sol: float = 0.003,
        max_attempts: int = 3,
        backoff_sec: float = 2.0,
        clock: Callable = utcnow,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.treasury = treasury
        self.exchange = exchange
        self.ledger = ledger
        self.sol_mint = sol_mint
        self.slippage_bps = slippage_bps
        self.fee_buffer_sol = fee_buffer_sol
        self.max_attempts = max_attempts
        self.backoff_sec = backoff_sec
        self.clock = clock
        self._sleep = sleep

    async def settle(self, match_id: str) -> Optional[Prize]:
        """Convert the pool and pay the winner. Never changes the winner or status."""
        match = await run_in_threadpool(self.store.get, match_id)
        if match is None or match.status != MatchStatus.COMPLETED:
            logger.warning("Not settling %s: match is not completed", match_id)
            return None
        if match.prize is not None:
            logger.info("Match %s already has a prize record", match_id)
            return match.prize

        prize = None
        if match.winner and match.total_sol_collected > 0:
            prize = await self._pay_out(match)

            def write_prize(m: Match):
                if m.prize is not None:
                    return False
                m.prize = prize
                m.updated_at = self.clock()

            match = await run_in_threadpool(self.store.update, match_id, write_prize)
            prize = match.prize
        else:
            logger.info("Match %s has no winner or no funds, skipping payout", match_id)

        await self.store_payment_summary(match)
        return prize

    async def _pay_out(self, match: Match) -> Prize:
        mint = match.payout_asset_mint
        lamports = sol_to_lamports(match.total_sol_collected)
        decimals = await self.ledger.get_token_decimals(mint)
        base = dict(
            token_symbol=match.token_symbol,
            token_mint=mint,
            token_decimals=decimals,
            sol_collected=match.total_sol_collected,
        )
        required_sol = match.total_sol_collected + self.fee_buffer_sol

        try:
            await self.treasury.ensure_sol_balance(required_sol)
        except EXTERNAL_ERRORS as e:
            logger.error("Match %s: treasury cannot fund the swap: %s", match.id, e)
            return await self._quote_only(match, lamports, str(e), base)

        direct = await self._try_direct(match, lamports, base)
        if direct is not None:
            return direct

        quote = None
        try:
            # Checked again right before the treasury swap
            await self.treasury.ensure_sol_balance(required_sol)
            quote = await self.exchange.get_quote(self.sol_mint, mint, lamports, self.slippage_bps)
            transaction = await self.exchange.build_swap_transaction(quote, self.treasury.address)
            if not transaction:
                raise ExchangeError("Exchange returned no swap transaction")
            swap_signature = await self.treasury.sign_and_submit(transaction)
        except UnconfirmedTransaction as e:
            return self._unconfirmed_swap(match, quote, e, base, direct=False)
        except EXTERNAL_ERRORS as e:
            logger.exception("Match %s: swap into treasury failed", match.id)
            return await self._quote_only(match, lamports, str(e), base)

        logger.info("Match %s: swapped %d lamports into %d %s (%s)", match.id, lamports, quote.out_amount, match.token_symbol, swap_signature)
        result = await self.transfer_with_retry(match.winner, mint, quote.out_amount)
        return Prize(
            **base,
            prize_amount_formatted=format_amount(quote.out_amount, decimals),
            raw_amount=quote.out_amount,
            swap_success=True,
            swap_signature=swap_signature,
            transfer_success=result.success,
            transfer_signature=result.signature,
            transfer_error=result.error,
            transfer_unconfirmed=result.unconfirmed,
        )

    async def _try_direct(self, match: Match, lamports: int, base: dict) -> Optional[Prize]:
        """Swap straight into the winner's token account; None means use the fallback."""
        mint = match.payout_asset_mint
        quote = None
        try:
            winner_account = await self.ledger.find_token_account(match.winner, mint)
            if not winner_account:
                logger.info("Match %s: winner has no %s account, using treasury swap", match.id, match.token_symbol)
                return None
            quote = await self.exchange.get_quote(self.sol_mint, mint, lamports, self.slippage_bps)
            transaction = await self.exchange.build_swap_transaction(quote, self.treasury.address, winner_account)
            if not transaction:
                logger.warning("Match %s: no direct swap transaction offered", match.id)
                return None
            signature = await self.treasury.sign_and_submit(transaction)
        except UnconfirmedTransaction as e:
            # Already sent: falling back could swap the pool twice
            return self._unconfirmed_swap(match, quote, e, base, direct=True)
        except EXTERNAL_ERRORS as e:
            logger.warning("Match %s: direct swap failed, falling back: %s", match.id, e)
            return None

        logger.info("Match %s: paid %s directly (%s)", match.id, match.winner, signature)
        return Prize(
            **base,
            prize_amount_formatted=format_amount(quote.out_amount, base["token_decimals"]),
            raw_amount=quote.out_amount,
            swap_success=True,
            swap_signature=signature,
            transfer_success=True,
            transfer_signature=signature,
            direct_transfer=True,
        )

    def _unconfirmed_swap(self, match: Match, quote, error: UnconfirmedTransaction, base: dict, direct: bool) -> Prize:
        logger.error("Match %s: swap %s was sent but not confirmed, holding the payout", match.id, error.signature)
        return Prize(
            **base,
            prize_amount_formatted=format_amount(quote.out_amount, base["token_decimals"]) if quote else None,
            raw_amount=quote.out_amount if quote else None,
            swap_signature=error.signature,
            swap_unconfirmed=True,
            direct_transfer=direct,
            error=str(error),
            recommended_action=f"Look up swap {error.signature} on-chain before paying the winner manually",
        )

    async def _quote_only(self, match: Match, lamports: int, error: str, base: dict) -> Prize:
        quote_amount = None
        formatted = None
        raw_amount = None
        try:
            quote = await self.exchange.get_quote(self.sol_mint, match.payout_asset_mint, lamports, self.slippage_bps)
            raw_amount = quote.out_amount
            quote_amount = str(quote.out_amount)
            formatted = format_amount(quote.out_amount, base["token_decimals"])
        except ExchangeError as e:
            logger.warning("Match %s: estimate quote failed too: %s", match.id, e)

        balance_issue = is_balance_issue(error)
        return Prize(
            **base,
            prize_amount_formatted=formatted,
            raw_amount=raw_amount,
            quote_amount=quote_amount,
            used_quote=quote_amount is not None,
            swap_failed=True,
            error=error,
            is_balance_issue=balance_issue,
            recommended_action=(
                "Fund the treasury with SOL, then swap the pool and pay the winner manually"
                if balance_issue
                else "Check exchange availability, then swap the pool and pay the winner manually"
            ),
        )

    async def transfer_with_retry(self, destination: str, mint: str, raw_amount: int) -> TransferResult:
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                signature = await self.treasury.transfer_tokens(mint, destination, raw_amount)
                return TransferResult(success=True, signature=signature, attempts=attempt)
            except UnconfirmedTransaction as e:
                # Never resend a transfer that may still land
                logger.error("Transfer %s to %s is unconfirmed, not retrying", e.signature, destination)
                return TransferResult(success=False, signature=e.signature, error=str(e), attempts=attempt, unconfirmed=True)
            except EXTERNAL_ERRORS as e:
                last_error = str(e)
                logger.warning("Transfer to %s failed (attempt %d/%d): %s", destination, attempt, self.max_attempts, e)
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_sec * attempt)
        return TransferResult(success=False, error=last_error, attempts=self.max_attempts)

    async def retry_failed_transfer(self, match_id: str) -> RetryTransferResponse:
        now = self.clock()

        def claim_retry(m: Match):
            if m.status != MatchStatus.COMPLETED or not m.winner or m.prize is None:
                raise failed_precondition("Match has no settled prize to retry")
            if m.prize.transfer_success:
                raise already_exists("Prize transfer already succeeded")
            if m.prize.retry_in_progress:
                raise already_exists("A transfer retry is already in progress")
            if m.prize.transfer_unconfirmed:
                raise failed_precondition(
                    "Previous transfer is unconfirmed; reconcile it on-chain first",
                    transferSignature=m.prize.transfer_signature,
                )
            if not m.prize.swap_success or not m.prize.raw_amount:
                raise failed_precondition("Swap did not succeed; nothing to transfer")
            m.prize.retry_in_progress = True
            m.updated_at = now

        # Claimed before any funds move, so overlapping retries pay at most once
        match = await run_in_threadpool(self.store.update, match_id, claim_retry)
        try:
            result = await self.transfer_with_retry(
                match.winner, match.prize.token_mint or match.payout_asset_mint, match.prize.raw_amount
            )
        except Exception:
            await run_in_threadpool(self.store.update, match_id, self._release_retry)
            raise

        def record_retry(m: Match):
            m.prize.retry_in_progress = False
            m.prize.retry_attempted = True
            m.prize.retry_at = now
            m.prize.transfer_success = result.success
            if result.success:
                m.prize.transfer_signature = result.signature
                m.prize.transfer_error = None
                m.prize.retry_error = None
            else:
                m.prize.retry_error = result.error
                if result.unconfirmed:
                    m.prize.transfer_signature = result.signature
                    m.prize.transfer_unconfirmed = True
            m.updated_at = self.clock()

        await run_in_threadpool(self.store.update, match_id, record_retry)
        if result.success:
            logger.info("Match %s: retried transfer succeeded (%s)", match_id, result.signature)
            message = "Transfer completed"
        else:
            logger.error("Match %s: retried transfer failed: %s", match_id, result.error)
            message = f"Transfer failed: {result.error}"
        return RetryTransferResponse(
            success=result.success,
            message=message,
            transfer_signature=result.signature,
            match_id=match_id,
        )

    def _release_retry(self, m: Match):
        if m.prize is None or not m.prize.retry_in_progress:
            return False
        m.prize.retry_in_progress = False
        m.updated_at = self.clock()

    async def list_failed_transfers(self, limit: int = 50) -> List[FailedTransfer]:
        completed = await run_in_threadpool(self.store.list_completed)
        failed = []
        for match in completed:
            prize = match.prize
            if prize and ((prize.swap_success and not prize.transfer_success) or prize.swap_unconfirmed):
                failed.append(
                    FailedTransfer(match_id=match.id, winner=match.winner, completed_at=match.completed_at, prize=prize)
                )
                if len(failed) >= limit:
                    break
        return failed

    async def store_payment_summary(self, match: Match) -> bool:
        summary = PaymentSummary(
            id=f"{match.id}payments",
            match_id=match.id,
            winner=match.winner,
            total_players=len(match.players),
            total_sol_collected=match.total_sol_collected,
            entry_fee_sol=match.entry_fee_sol,
            players=[
                PlayerPaymentSummary(
                    address=p.address,
                    amount_paid=p.sol_paid,
                    transaction_signature=p.transaction_signature,
                    joined_at=p.joined_at,
                    final_status="winner" if p.address == match.winner else PlayerStatus(p.status).value,
                    response_time=p.response_time,
                )
                for p in sorted(match.players.values(), key=lambda p: p.joined_at)
            ],
            prize_amount_formatted=match.prize.prize_amount_formatted if match.prize else None,
            token_symbol=match.token_symbol,
            completed_at=match.completed_at,
        )
        data = summary.model_dump(mode="json", by_alias=True)
        written = await run_in_threadpool(self.store.save_payment_summary, summary.id, match.id, data)
        if not written:
            logger.info("Payment summary for %s already stored", match.id)
        return written
