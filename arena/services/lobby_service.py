import logging
import re
import uuid
from datetime import timedelta
from typing import Callable, Optional, Set

from fastapi.concurrency import run_in_threadpool

from arena.core.config import Settings, settings as default_settings
from arena.core.errors import (
    ArenaError,
    ErrorKind,
    already_exists,
    failed_precondition,
    internal,
    invalid_argument,
    not_found,
)
from arena.models.match_model import OPEN_STATUSES, Match, MatchStatus, Payment, Player, utcnow
from arena.schemas.match_schemas import (
    CleanupResponse,
    ForceStartResponse,
    JoinResponse,
    RefundResponse,
    TreasuryStatus,
)
from arena.services.ledger import LedgerError, SolanaRpcClient, UnconfirmedTransaction
from arena.services.locks import InMemoryLeaseStore
from arena.services.match_store import MatchStore
from arena.services.payment_verifier import PaymentVerifier
from arena.services.signer import SignerError
from arena.services.treasury import InsufficientTreasuryBalance, Treasury

logger = logging.getLogger(__name__)

# Base58, 32 byte public keys
ADDRESS_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
MAX_JOIN_ATTEMPTS = 10


class LobbyUnavailable(Exception):
    """The chosen lobby filled or started before the join landed."""


def wallet_lease_key(address: str) -> str:
    return f"wallet:{address}"


def validate_address(address: Optional[str]) -> str:
    if not address or not isinstance(address, str):
        raise invalid_argument("playerAddress is required")
    address = address.strip()
    if not ADDRESS_PATTERN.match(address):
        raise invalid_argument("playerAddress is not a valid wallet address")
    return address


def derive_open_status(match: Match, now) -> None:
    """Status of a not-yet-started match from its player count."""
    count = match.sync_player_count()
    if count == 0:
        match.status = MatchStatus.CANCELLED
        match.countdown_started_at = None
    elif count == 1:
        match.status = MatchStatus.WAITING
        match.countdown_started_at = None
    elif count < match.max_players:
        match.status = MatchStatus.LOBBY
        match.countdown_started_at = now
    else:
        # Full: skip the countdown and go straight into round 1
        match.status = MatchStatus.STARTING
        match.countdown_started_at = None
        match.start(now)


class LobbyService:
    def __init__(
        self,
        store: MatchStore,
        ledger: SolanaRpcClient,
        verifier: PaymentVerifier,
        treasury: Treasury,
        settings: Settings = default_settings,
        clock: Callable = utcnow,
        leases=None,
    ):
        self.store = store
        self.ledger = ledger
        self.verifier = verifier
        self.treasury = treasury
        self.settings = settings
        self.clock = clock
        self.leases = leases or InMemoryLeaseStore(ttl_sec=settings.LOCK_TTL_SEC)

    async def _create_lobby(self) -> Match:
        seq = await run_in_threadpool(self.store.next_match_seq)
        now = self.clock()
        match = Match(
            id=f"game{seq}",
            status=MatchStatus.WAITING,
            round=0,
            countdown_duration=self.settings.COUNTDOWN_DURATION_SEC,
            round_duration_sec=self.settings.ROUND_DURATION_SEC,
            max_players=self.settings.MAX_PLAYERS,
            entry_fee_sol=self.settings.ENTRY_FEE_SOL,
            token_symbol=self.settings.TOKEN_SYMBOL,
            payout_asset_mint=self.settings.PAYOUT_ASSET_MINT,
            created_at=now,
            updated_at=now,
        )
        return await run_in_threadpool(self.store.create, match, seq)

    async def _ensure_not_playing(self, address: str) -> None:
        active = await run_in_threadpool(self.store.find_active_match_for_player, address)
        if active is not None:
            raise already_exists(f"Player is already in active match {active.id}")

    async def join_lobby(self, player_address: Optional[str], transaction_signature: Optional[str] = None) -> JoinResponse:
        address = validate_address(player_address)
        await self._ensure_not_playing(address)
        entry_fee = self.settings.ENTRY_FEE_SOL

        if not transaction_signature:
            return await self._payment_instruction(address, entry_fee)

        # One signed join per wallet at a time
        key = wallet_lease_key(address)
        holder = uuid.uuid4().hex
        if not await run_in_threadpool(self.leases.try_acquire, key, holder):
            raise already_exists("Another join for this wallet is already in progress")
        try:
            return await self._join_with_payment(address, transaction_signature, entry_fee)
        finally:
            await run_in_threadpool(self.leases.release, key, holder)

    async def _join_with_payment(self, address: str, transaction_signature: str, entry_fee: float) -> JoinResponse:
        if await run_in_threadpool(self.store.is_signature_used, transaction_signature):
            raise already_exists("Transaction signature has already been used")
        await self.verifier.verify(transaction_signature, address, entry_fee)
        if not await run_in_threadpool(self.store.claim_signature, transaction_signature, address, entry_fee):
            raise already_exists("Transaction signature has already been used")

        try:
            response = await self._place_player(address, transaction_signature, entry_fee)
        except Exception:
            await run_in_threadpool(self.store.release_signature, transaction_signature)
            raise
        await run_in_threadpool(self.store.attach_payment, transaction_signature, response.match_id)
        return response

    async def _payment_instruction(self, address: str, entry_fee: float) -> JoinResponse:
        try:
            balance = await self.ledger.get_balance(address)
        except LedgerError as e:
            logger.warning("Balance lookup failed for %s: %s", address, e)
            raise failed_precondition("Could not read wallet balance")
        if balance < entry_fee:
            raise failed_precondition("Insufficient balance for entry fee", balance=balance, required=entry_fee)

        lobbies = await run_in_threadpool(self.store.find_open_lobbies)
        target = lobbies[0] if lobbies else await self._create_lobby()
        return JoinResponse(
            success=False,
            requires_payment=True,
            entry_fee=entry_fee,
            treasury_address=self.treasury.address,
            target_match_id=target.id,
            existing_lobbies=len(lobbies),
            message=f"Send {entry_fee} SOL to the treasury to join",
        )

    async def _place_player(self, address: str, signature: str, entry_fee: float) -> JoinResponse:
        tried: Set[str] = set()
        for _ in range(MAX_JOIN_ATTEMPTS):
            # Re-checked before every write; a concurrent join may have placed this wallet
            await self._ensure_not_playing(address)
            lobbies = await run_in_threadpool(self.store.find_open_lobbies)
            candidates = [m for m in lobbies if m.id not in tried]
            lobby = candidates[0] if candidates else await self._create_lobby()
            now = self.clock()
            opened = {}

            def add_player(match: Match):
                if match.status not in OPEN_STATUSES or len(match.players) >= match.max_players:
                    raise LobbyUnavailable(match.id)
                if match.has_player(address):
                    raise already_exists("Player already joined this match")
                opened["first"] = not match.players
                match.players[address] = Player(
                    address=address,
                    joined_at=now,
                    sol_paid=entry_fee,
                    transaction_signature=signature,
                )
                match.payments.append(Payment(player=address, signature=signature, amount=entry_fee))
                match.total_sol_collected += entry_fee
                derive_open_status(match, now)
                match.updated_at = now

            try:
                match = await run_in_threadpool(self.store.update, lobby.id, add_player)
            except LobbyUnavailable:
                logger.info("Lobby %s filled before %s could join, trying the next one", lobby.id, address)
                tried.add(lobby.id)
                continue
            except ArenaError as e:
                if e.kind == ErrorKind.NOT_FOUND:
                    # Lobby was cleaned up between the scan and the write
                    tried.add(lobby.id)
                    continue
                raise

            logger.info("Player %s joined %s (%d/%d, %s)", address, match.id, match.player_count, match.max_players, match.status)
            return JoinResponse(
                success=True,
                match_id=match.id,
                entry_fee=entry_fee,
                player_count=match.player_count,
                max_players=match.max_players,
                status=MatchStatus(match.status).value,
                is_new_match=opened.get("first", False),
                message="Joined match" if match.status != MatchStatus.IN_PROGRESS else "Match full, starting now",
            )
        raise internal("Could not place player in a lobby")

    async def request_refund(self, match_id: Optional[str], player_address: Optional[str]) -> RefundResponse:
        if not match_id:
            raise invalid_argument("matchId is required")
        address = validate_address(player_address)
        fee = self.settings.REFUND_TRANSFER_FEE_SOL
        claimed = {}

        def mark_requested(match: Match):
            if match.status not in OPEN_STATUSES:
                raise failed_precondition("Refunds are only possible before the match starts", status=match.status)
            player = match.players.get(address)
            if player is None:
                raise not_found("Player not in this match")
            if player.refund_requested:
                raise already_exists("Refund already requested")
            amount = round(player.sol_paid - fee, 9)
            if amount <= 0:
                raise failed_precondition("Nothing to refund after transfer fees", solPaid=player.sol_paid)
            player.refund_requested = True
            match.updated_at = self.clock()
            claimed["amount"] = amount
            claimed["sol_paid"] = player.sol_paid

        await run_in_threadpool(self.store.update, match_id, mark_requested)
        refund_amount = claimed["amount"]

        try:
            signature = await self.treasury.transfer_sol(address, refund_amount)
        except UnconfirmedTransaction as e:
            # The flag stays set so the refund is never sent twice
            logger.error("Refund %s to %s for %s is unconfirmed", e.signature, address, match_id)
            raise internal(f"Refund {e.signature} was sent but not confirmed; check it before retrying")
        except (LedgerError, SignerError, InsufficientTreasuryBalance) as e:
            logger.exception("Refund transfer to %s for %s failed", address, match_id)

            def clear_flag(match: Match):
                player = match.players.get(address)
                if player is None or not player.refund_requested:
                    return False
                player.refund_requested = False
                match.updated_at = self.clock()

            await run_in_threadpool(self.store.update, match_id, clear_flag)
            raise internal(f"Refund transfer failed: {e}")

        def remove_player(match: Match):
            player = match.players.pop(address, None)
            if player is None:
                return False
            now = self.clock()
            match.total_sol_collected = max(round(match.total_sol_collected - player.sol_paid, 9), 0.0)
            if match.status in OPEN_STATUSES:
                derive_open_status(match, now)
            else:
                # Started while the refund was in flight; keep its status
                match.sync_player_count()
            match.updated_at = now

        match = await run_in_threadpool(self.store.update, match_id, remove_player)
        logger.info("Refunded %.6f SOL to %s from %s (%s)", refund_amount, address, match_id, signature)
        return RefundResponse(
            success=True,
            refund_amount=refund_amount,
            refund_signature=signature,
            new_player_count=match.player_count,
            new_status=MatchStatus(match.status).value,
            message="Refund processed",
        )

    async def cleanup_stale_lobbies(self, player_address: Optional[str]) -> CleanupResponse:
        address = validate_address(player_address)
        cutoff = self.clock() - timedelta(minutes=self.settings.STALE_LOBBY_MINUTES)
        cleaned = 0
        for lobby in await run_in_threadpool(self.store.find_open_lobbies):
            if not lobby.has_player(address) or lobby.created_at > cutoff:
                continue

            dropped = {}

            def drop_player(match: Match):
                dropped.clear()
                if match.status not in OPEN_STATUSES or address not in match.players:
                    return False
                del match.players[address]
                if match.players:
                    derive_open_status(match, self.clock())
                else:
                    # Left open so the versioned delete below can remove it
                    match.sync_player_count()
                match.updated_at = self.clock()
                dropped["ok"] = True

            try:
                match = await run_in_threadpool(self.store.update, lobby.id, drop_player)
            except ArenaError as e:
                if e.kind == ErrorKind.NOT_FOUND:
                    continue
                raise
            if not dropped:
                continue
            if match.player_count == 0:
                await run_in_threadpool(self.store.delete, match.id, match.version)
                logger.info("Deleted empty stale lobby %s", match.id)
            cleaned += 1
        return CleanupResponse(success=True, cleaned_matches=cleaned, message=f"Cleaned {cleaned} stale lobbies")

    async def force_start(self, match_id: str) -> ForceStartResponse:
        now = self.clock()
        started = {}

        def start(match: Match):
            started.clear()
            if match.status not in (MatchStatus.WAITING, MatchStatus.LOBBY, MatchStatus.STARTING):
                return False
            if not match.players:
                raise failed_precondition("Match has no players")
            match.start(now)
            match.updated_at = now
            started["ok"] = True

        match = await run_in_threadpool(self.store.update, match_id, start)
        if started:
            logger.info("Match %s force-started with %d players", match_id, match.player_count)
            message = "Match started"
        else:
            message = f"Match already {MatchStatus(match.status).value}"
        return ForceStartResponse(
            success=bool(started),
            match_id=match.id,
            status=MatchStatus(match.status).value,
            round=match.round,
            message=message,
        )

    async def treasury_status(self) -> TreasuryStatus:
        try:
            balance = await self.treasury.sol_balance()
        except LedgerError as e:
            raise internal(f"Could not read treasury balance: {e}")
        return TreasuryStatus(address=self.treasury.address, sol_balance=balance)
