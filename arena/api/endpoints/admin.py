import logging

from fastapi import APIRouter, Depends, Query

from arena.api.dependencies import get_lobby_service, get_settlement_service
from arena.core.security import get_current_operator
from arena.schemas import match_schemas
from arena.services.lobby_service import LobbyService
from arena.services.settlement_service import SettlementOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("/matches/{match_id}/retry-transfer", response_model=match_schemas.RetryTransferResponse)
async def retry_transfer_endpoint(
    match_id: str,
    settlement: SettlementOrchestrator = Depends(get_settlement_service),
    operator: str = Depends(get_current_operator),
):
    logger.info("Operator %s retrying prize transfer for %s", operator, match_id)
    return await settlement.retry_failed_transfer(match_id)

@router.get("/failed-transfers", response_model=match_schemas.FailedTransfersResponse)
async def failed_transfers_endpoint(
    limit: int = Query(50, ge=1, le=500),
    settlement: SettlementOrchestrator = Depends(get_settlement_service),
    operator: str = Depends(get_current_operator),
):
    matches = await settlement.list_failed_transfers(limit=limit)
    return match_schemas.FailedTransfersResponse(count=len(matches), matches=matches)

@router.post("/matches/{match_id}/force-start", response_model=match_schemas.ForceStartResponse)
async def force_start_endpoint(
    match_id: str,
    lobby_service: LobbyService = Depends(get_lobby_service),
    operator: str = Depends(get_current_operator),
):
    logger.info("Operator %s force-starting %s", operator, match_id)
    return await lobby_service.force_start(match_id)

@router.get("/treasury", response_model=match_schemas.TreasuryStatus)
async def treasury_endpoint(
    lobby_service: LobbyService = Depends(get_lobby_service),
    operator: str = Depends(get_current_operator),
):
    return await lobby_service.treasury_status()
