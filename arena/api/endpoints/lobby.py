from fastapi import APIRouter, Depends

from arena.api.dependencies import get_lobby_service
from arena.schemas import match_schemas
from arena.services.lobby_service import LobbyService

router = APIRouter()

@router.post("/join", response_model=match_schemas.JoinResponse, response_model_exclude_none=True)
async def join_lobby_endpoint(
    join_in: match_schemas.JoinRequest,
    lobby_service: LobbyService = Depends(get_lobby_service),
):
    # Without a signature this only returns payment instructions
    return await lobby_service.join_lobby(join_in.player_address, join_in.transaction_signature)

@router.post("/refund", response_model=match_schemas.RefundResponse)
async def request_refund_endpoint(
    refund_in: match_schemas.RefundRequest,
    lobby_service: LobbyService = Depends(get_lobby_service),
):
    return await lobby_service.request_refund(refund_in.match_id, refund_in.player_address)

@router.post("/cleanup", response_model=match_schemas.CleanupResponse)
async def cleanup_stale_lobbies_endpoint(
    cleanup_in: match_schemas.CleanupRequest,
    lobby_service: LobbyService = Depends(get_lobby_service),
):
    return await lobby_service.cleanup_stale_lobbies(cleanup_in.player_address)
