from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchStatus(str, Enum):
    WAITING = "waiting"
    LOBBY = "lobby"
    STARTING = "starting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ENDED = "ended"


# Statuses a new player can still join or refund from
OPEN_STATUSES = (MatchStatus.WAITING, MatchStatus.LOBBY)
# Statuses that bind a wallet to the match
ACTIVE_STATUSES = (MatchStatus.WAITING, MatchStatus.LOBBY, MatchStatus.STARTING, MatchStatus.IN_PROGRESS)
# Statuses the tick processor sweeps
TICKABLE_STATUSES = (MatchStatus.IN_PROGRESS, MatchStatus.LOBBY, MatchStatus.STARTING)


class PlayerStatus(str, Enum):
    ALIVE = "alive"
    ELIMINATED = "eliminated"


class EliminationReason(str, Enum):
    SLOWEST_RESPONSE = "slowest_response"
    NO_ACTION = "no_action"


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True
        use_enum_values = True


class Player(CamelModel):
    address: str
    status: PlayerStatus = PlayerStatus.ALIVE
    is_bot: bool = False
    joined_at: datetime = Field(default_factory=utcnow)
    sol_paid: float = 0.0
    transaction_signature: Optional[str] = None
    refund_requested: bool = False

    last_action_round: int = 0
    last_action_at: Optional[datetime] = None
    response_time: Optional[float] = None # milliseconds, the value used for ranking
    client_response_time: Optional[float] = None
    server_response_time: Optional[float] = None
    client_timestamp: Optional[float] = None
    client_round_start_time: Optional[float] = None

    eliminated_at: Optional[datetime] = None
    elimination_reason: Optional[EliminationReason] = None
    elimination_round: Optional[int] = None

    @property
    def is_alive(self) -> bool:
        return self.status == PlayerStatus.ALIVE


class Payment(CamelModel):
    player: str
    signature: str
    amount: float


class Prize(CamelModel):
    prize_amount_formatted: Optional[str] = None
    token_symbol: str
    token_mint: Optional[str] = None
    token_decimals: Optional[int] = None
    raw_amount: Optional[int] = None
    sol_collected: float = 0.0
    quote_amount: Optional[str] = None

    swap_success: bool = False
    swap_signature: Optional[str] = None
    transfer_success: bool = False
    transfer_signature: Optional[str] = None
    transfer_error: Optional[str] = None
    direct_transfer: bool = False
    # Sent but never confirmed; reconcile on-chain before moving funds again
    swap_unconfirmed: bool = False
    transfer_unconfirmed: bool = False

    # Quote-only fallback when no swap went through
    swap_failed: bool = False
    error: Optional[str] = None
    is_balance_issue: bool = False
    recommended_action: Optional[str] = None
    used_quote: bool = False

    retry_attempted: bool = False
    retry_in_progress: bool = False
    retry_at: Optional[datetime] = None
    retry_error: Optional[str] = None


class EliminationEntry(CamelModel):
    address: str
    elimination_round: Optional[int] = None
    response_time: Optional[float] = None
    elimination_reason: Optional[EliminationReason] = None


class FinalStats(CamelModel):
    total_players: int
    total_rounds: int
    winner_response_time: Optional[float] = None
    elimination_order: List[EliminationEntry] = Field(default_factory=list)


class Match(CamelModel):
    id: str
    status: MatchStatus = MatchStatus.WAITING
    players: Dict[str, Player] = Field(default_factory=dict)
    player_count: int = 0
    round: int = 0
    round_started_at: Optional[datetime] = None
    countdown_started_at: Optional[datetime] = None
    countdown_duration: int = 15
    round_duration_sec: int = 5

    total_sol_collected: float = 0.0
    max_players: int
    entry_fee_sol: float
    token_symbol: str
    payout_asset_mint: str
    payments: List[Payment] = Field(default_factory=list)

    winner: Optional[str] = None
    prize: Optional[Prize] = None
    final_stats: Optional[FinalStats] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    version: int = 0 # managed by the store

    def human_players(self) -> List[Player]:
        return [p for p in self.players.values() if not p.is_bot]

    def alive_players(self) -> List[Player]:
        return [p for p in self.human_players() if p.is_alive]

    def has_player(self, address: str) -> bool:
        return address in self.players

    def sync_player_count(self) -> int:
        self.player_count = len(self.players)
        return self.player_count

    def start(self, now: datetime) -> None:
        self.status = MatchStatus.IN_PROGRESS
        self.round = 1
        self.round_started_at = now
        self.countdown_started_at = None

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"version"})

    @classmethod
    def from_document(cls, data: dict, version: int = 0) -> "Match":
        return cls.model_validate({**data, "version": version})
