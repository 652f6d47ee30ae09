import logging
import uuid
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool

from arena.models.match_model import TICKABLE_STATUSES, Match, MatchStatus, utcnow
from arena.schemas.match_schemas import TickResponse
from arena.services.match_store import MatchStore
from arena.services.resolver import RoundOutcome, resolve_round
from arena.services.settlement_service import SettlementOrchestrator

logger = logging.getLogger(__name__)


def lease_key(match_id: str) -> str:
    return f"match:{match_id}"


class TickProcessor:
    """
    Advances every live match whose timer has run out.

    Safe to call from many requests at once: each match is guarded by a lease,
    and each transition is a versioned write that re-checks its timer, so a
    round is resolved at most once and actions landing mid-sweep are kept.
    """

    def __init__(
        self,
        store: MatchStore,
        leases,
        settlement: SettlementOrchestrator,
        round_buffer_sec: float = 5,
        clock: Callable = utcnow,
        holder_id: Optional[str] = None,
    ):
        self.store = store
        self.leases = leases
        self.settlement = settlement
        self.round_buffer_sec = round_buffer_sec
        self.clock = clock
        self.holder_id = holder_id or uuid.uuid4().hex

    async def process_matches(self) -> TickResponse:
        matches = await run_in_threadpool(self.store.list_by_status, TICKABLE_STATUSES)
        processed = 0
        for match in matches:
            key = lease_key(match.id)
            if not await run_in_threadpool(self.leases.try_acquire, key, self.holder_id):
                logger.info("Match %s is being processed elsewhere, skipping", match.id)
                continue
            try:
                if await self.process_match(match.id):
                    processed += 1
            except Exception:
                # One broken match must not stall the rest of the sweep
                logger.exception("Error processing match %s", match.id)
            finally:
                await run_in_threadpool(self.leases.release, key, self.holder_id)
        return TickResponse(
            success=True,
            processed_matches=processed,
            message=f"Processed {processed} of {len(matches)} matches",
        )

    async def process_match(self, match_id: str) -> bool:
        now = self.clock()
        state = {}

        def advance(match: Match):
            state.clear()
            if match.status == MatchStatus.STARTING:
                match.start(now)
                logger.info("Match %s started", match.id)
            elif match.status == MatchStatus.LOBBY:
                if match.countdown_started_at is None:
                    return False
                if (now - match.countdown_started_at).total_seconds() < match.countdown_duration:
                    return False
                match.start(now)
                logger.info("Match %s countdown finished, round 1 started with %d players", match.id, match.player_count)
            elif match.status == MatchStatus.IN_PROGRESS:
                if match.round_started_at is None:
                    return False
                elapsed = (now - match.round_started_at).total_seconds()
                if elapsed < match.round_duration_sec + self.round_buffer_sec:
                    return False
                state["outcome"] = resolve_round(match, now)
            else:
                return False
            match.updated_at = now
            state["changed"] = True

        await run_in_threadpool(self.store.update, match_id, advance)
        outcome: Optional[RoundOutcome] = state.get("outcome")
        if outcome is not None and outcome.completed:
            await self._settle(match_id)
        return bool(state.get("changed"))

    async def _settle(self, match_id: str) -> None:
        try:
            await self.settlement.settle(match_id)
        except Exception:
            # The match stays completed; the payout can be retried by an operator
            logger.exception("Settlement failed for match %s", match_id)
