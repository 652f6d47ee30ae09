from datetime import datetime
from typing import List, Optional

from pydantic import Field

from arena.models.match_model import CamelModel, Prize


class JoinRequest(CamelModel):
    player_address: Optional[str] = None
    transaction_signature: Optional[str] = None


class JoinResponse(CamelModel):
    success: bool
    requires_payment: bool = False
    entry_fee: float
    treasury_address: Optional[str] = None
    target_match_id: Optional[str] = None
    existing_lobbies: Optional[int] = None

    match_id: Optional[str] = None
    player_count: Optional[int] = None
    max_players: Optional[int] = None
    status: Optional[str] = None
    is_new_match: Optional[bool] = None
    message: Optional[str] = None


class ActionRequest(CamelModel):
    player_address: Optional[str] = None
    client_timestamp: Optional[float] = None # epoch millis
    client_response_time: Optional[float] = None # millis
    round_start_time: Optional[float] = None # epoch millis, as seen by the client


class ActionResponse(CamelModel):
    success: bool
    round: Optional[int] = None
    response_time: Optional[float] = None
    message: str


class RefundRequest(CamelModel):
    match_id: Optional[str] = None
    player_address: Optional[str] = None


class RefundResponse(CamelModel):
    success: bool
    refund_amount: float
    refund_signature: str
    new_player_count: int
    new_status: str
    message: str


class CleanupRequest(CamelModel):
    player_address: Optional[str] = None


class CleanupResponse(CamelModel):
    success: bool
    cleaned_matches: int
    message: str


class TickResponse(CamelModel):
    success: bool
    processed_matches: int
    message: str


class RetryTransferResponse(CamelModel):
    success: bool
    message: str
    transfer_signature: Optional[str] = None
    match_id: str


class FailedTransfer(CamelModel):
    match_id: str
    winner: Optional[str] = None
    completed_at: Optional[datetime] = None
    prize: Optional[Prize] = None


class FailedTransfersResponse(CamelModel):
    success: bool = True
    count: int
    matches: List[FailedTransfer] = Field(default_factory=list)


class ForceStartResponse(CamelModel):
    success: bool
    match_id: str
    status: str
    round: int
    message: str


class TreasuryStatus(CamelModel):
    address: str
    sol_balance: float


class PlayerPaymentSummary(CamelModel):
    address: str
    amount_paid: float
    transaction_signature: Optional[str] = None
    joined_at: Optional[datetime] = None
    final_status: str
    response_time: Optional[float] = None


class PaymentSummary(CamelModel):
    id: str
    match_id: str
    winner: Optional[str] = None
    total_players: int
    total_sol_collected: float
    entry_fee_sol: float
    players: List[PlayerPaymentSummary] = Field(default_factory=list)
    prize_amount_formatted: Optional[str] = None
    token_symbol: Optional[str] = None
    completed_at: Optional[datetime] = None
