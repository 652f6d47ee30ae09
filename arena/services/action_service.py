import logging
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool

from arena.core.errors import failed_precondition, invalid_argument, not_found
from arena.models.match_model import Match, MatchStatus, PlayerStatus, utcnow
from arena.schemas.match_schemas import ActionResponse
from arena.services.match_store import MatchStore

logger = logging.getLogger(__name__)


def compute_response_time(server_ms: float, client_ms: Optional[float], tolerance_ms: float) -> float:
    """
    Server measurement is authoritative. A client figure may only discount
    network latency, so it is clamped to [server - tolerance, server].
    """
    server_ms = max(server_ms, 0.0)
    if client_ms is None or client_ms < 0:
        return server_ms
    lower = max(server_ms - tolerance_ms, 0.0)
    return min(max(client_ms, lower), server_ms)


class ActionService:
    def __init__(
        self,
        store: MatchStore,
        grace_sec: float = 10,
        tolerance_ms: float = 1500,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.grace_sec = grace_sec
        self.tolerance_ms = tolerance_ms
        self.clock = clock

    async def player_action(
        self,
        match_id: str,
        player_address: str,
        client_timestamp: Optional[float] = None,
        client_response_time: Optional[float] = None,
        round_start_time: Optional[float] = None,
    ) -> ActionResponse:
        if not match_id or not player_address:
            raise invalid_argument("matchId and playerAddress are required")

        now = self.clock()
        result = {}

        def record(match: Match):
            result.clear()
            if match.status == MatchStatus.COMPLETED and match.completed_at is not None:
                if (now - match.completed_at).total_seconds() <= self.grace_sec:
                    # Late tap after the final round; nothing to record
                    result["response"] = ActionResponse(success=True, round=match.round, message="Match already completed")
                    return False
            if match.status != MatchStatus.IN_PROGRESS:
                raise failed_precondition("Match is not in progress", status=match.status)

            player = match.players.get(player_address)
            if player is None:
                raise not_found("Player not in this match")
            if player.status != PlayerStatus.ALIVE:
                raise failed_precondition("Player has been eliminated")

            if player.last_action_round == match.round:
                result["response"] = ActionResponse(
                    success=True,
                    round=match.round,
                    response_time=player.response_time,
                    message="Action already recorded for this round",
                )
                return False

            started = match.round_started_at or now
            server_ms = (now - started).total_seconds() * 1000
            response_time = compute_response_time(server_ms, client_response_time, self.tolerance_ms)

            player.last_action_round = match.round
            player.last_action_at = now
            player.response_time = response_time
            player.server_response_time = max(server_ms, 0.0)
            player.client_response_time = client_response_time
            player.client_timestamp = client_timestamp
            player.client_round_start_time = round_start_time
            match.updated_at = now
            result["response"] = ActionResponse(
                success=True,
                round=match.round,
                response_time=response_time,
                message="Action recorded",
            )

        await run_in_threadpool(self.store.update, match_id, record)
        response = result["response"]
        logger.debug("Action %s in %s round %s: %s", player_address, match_id, response.round, response.response_time)
        return response
