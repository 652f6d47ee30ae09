"""
Round resolution: who is eliminated when a round expires, and who wins.

Everything here is pure over a Match document; the caller persists the result.
Ties on response time are broken by wallet address ascending so that the same
document always resolves the same way.
"""
import logging
import math
from datetime import datetime
from typing import List, NamedTuple, Optional, Tuple

from arena.models.match_model import (
    EliminationEntry,
    EliminationReason,
    FinalStats,
    Match,
    MatchStatus,
    Player,
    PlayerStatus,
)

logger = logging.getLogger(__name__)


class RoundOutcome(NamedTuple):
    eliminated: List[str]
    winner: Optional[str] = None
    completed: bool = False
    ended: bool = False


def _time_or_slowest(player: Player) -> float:
    # An actor without a recorded time ranks as the slowest
    return player.response_time if player.response_time is not None else math.inf


def slowest_first(players: List[Player]) -> List[Player]:
    return sorted(players, key=lambda p: (-_time_or_slowest(p), p.address))


def fastest_first(players: List[Player]) -> List[Player]:
    return sorted(players, key=lambda p: (_time_or_slowest(p), p.address))


def partition_round(match: Match) -> Tuple[List[Player], List[Player]]:
    """Alive human players split into (acted this round, did not act)."""
    acted, idle = [], []
    for player in match.alive_players():
        if player.last_action_round == match.round:
            acted.append(player)
        else:
            idle.append(player)
    return acted, idle


def select_eliminations(match: Match) -> List[Tuple[Player, EliminationReason]]:
    acted, idle = partition_round(match)
    if len(acted) >= 2:
        # Only the slowest responder goes; idle players survive this round
        return [(slowest_first(acted)[0], EliminationReason.SLOWEST_RESPONSE)]
    if idle:
        return [(p, EliminationReason.NO_ACTION) for p in sorted(idle, key=lambda p: p.address)]
    return []


def determine_winner(match: Match) -> Optional[Player]:
    alive = match.alive_players()
    if len(alive) == 1:
        return alive[0]
    if alive:
        return None

    final_round = [p for p in match.human_players() if p.last_action_round == match.round]
    if final_round:
        return fastest_first(final_round)[0]

    candidates = match.human_players()
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda p: (-p.last_action_round, _time_or_slowest(p), p.joined_at, p.address),
    )


def _eliminate(player: Player, reason: EliminationReason, round_number: int, now: datetime) -> None:
    player.status = PlayerStatus.ELIMINATED
    player.elimination_reason = reason
    player.elimination_round = round_number
    player.eliminated_at = now


def _revive(player: Player) -> None:
    player.status = PlayerStatus.ALIVE
    player.elimination_reason = None
    player.elimination_round = None
    player.eliminated_at = None


def build_final_stats(match: Match, winner: Optional[Player]) -> FinalStats:
    eliminated = [p for p in match.human_players() if p.status == PlayerStatus.ELIMINATED]
    # Most recent elimination first
    eliminated.sort(key=lambda p: (-(p.elimination_round or 0), p.address))
    return FinalStats(
        total_players=len(match.players),
        total_rounds=match.round,
        winner_response_time=winner.response_time if winner else None,
        elimination_order=[
            EliminationEntry(
                address=p.address,
                elimination_round=p.elimination_round,
                response_time=p.response_time,
                elimination_reason=p.elimination_reason,
            )
            for p in eliminated
        ],
    )


def resolve_round(match: Match, now: datetime) -> RoundOutcome:
    """Apply one expired round to `match` in place."""
    if not match.human_players():
        match.status = MatchStatus.ENDED
        match.completed_at = now
        match.updated_at = now
        logger.warning("Match %s expired with no players, marking ended", match.id)
        return RoundOutcome(eliminated=[], ended=True)

    eliminated = []
    for player, reason in select_eliminations(match):
        _eliminate(player, reason, match.round, now)
        eliminated.append(player.address)
        logger.info("Match %s round %d: eliminated %s (%s)", match.id, match.round, player.address, reason.value)

    match.updated_at = now
    alive = match.alive_players()
    if len(alive) > 1:
        for player in alive:
            player.response_time = None
        match.round += 1
        match.round_started_at = now
        return RoundOutcome(eliminated=eliminated)

    winner = determine_winner(match)
    if winner is not None:
        _revive(winner)
    match.status = MatchStatus.COMPLETED
    match.winner = winner.address if winner else None
    match.completed_at = now
    match.final_stats = build_final_stats(match, winner)
    logger.info("Match %s completed after %d rounds, winner %s", match.id, match.round, match.winner)
    return RoundOutcome(eliminated=eliminated, winner=match.winner, completed=True)
