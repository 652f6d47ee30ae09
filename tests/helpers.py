import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from arena.models.match_model import Match, MatchStatus, Player

TREASURY = "T" * 44
START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def wallet(letter: str) -> str:
    # Valid base58 wallet; sorts the same way as its letter
    return letter * 44


def run(coro):
    return asyncio.run(coro)


def make_match(
    match_id: str = "game1",
    status: MatchStatus = MatchStatus.IN_PROGRESS,
    players: Optional[Dict[str, Player]] = None,
    round_number: int = 1,
    now: datetime = START,
    **kwargs,
) -> Match:
    players = players or {}
    fields = dict(
        id=match_id,
        status=status,
        players=players,
        player_count=len(players),
        round=round_number,
        round_started_at=now if status == MatchStatus.IN_PROGRESS else None,
        max_players=5,
        entry_fee_sol=0.01,
        total_sol_collected=round(0.01 * len(players), 9),
        token_symbol="BALL",
        payout_asset_mint="M" * 44,
        created_at=now,
        updated_at=now,
    )
    fields.update(kwargs)
    return Match(**fields)


def make_player(letter: str, acted_round: int = 0, response_time: Optional[float] = None, **kwargs) -> Player:
    return Player(
        address=wallet(letter),
        last_action_round=acted_round,
        response_time=response_time,
        sol_paid=0.01,
        joined_at=kwargs.pop("joined_at", START),
        **kwargs,
    )


def players_of(*players: Player) -> Dict[str, Player]:
    return {p.address: p for p in players}
