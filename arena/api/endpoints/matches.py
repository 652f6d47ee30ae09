from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from arena.api.dependencies import get_action_service, get_store, get_tick_processor
from arena.core.errors import not_found
from arena.schemas import match_schemas
from arena.services.action_service import ActionService
from arena.services.match_store import MatchStore
from arena.services.tick_service import TickProcessor

router = APIRouter()

@router.post("/tick", response_model=match_schemas.TickResponse)
async def tick_endpoint(tick_processor: TickProcessor = Depends(get_tick_processor)):
    return await tick_processor.process_matches()

@router.post("/{match_id}/action", response_model=match_schemas.ActionResponse)
async def player_action_endpoint(
    match_id: str,
    action_in: match_schemas.ActionRequest,
    action_service: ActionService = Depends(get_action_service),
):
    return await action_service.player_action(
        match_id,
        action_in.player_address,
        client_timestamp=action_in.client_timestamp,
        client_response_time=action_in.client_response_time,
        round_start_time=action_in.round_start_time,
    )

@router.get("/{match_id}")
async def get_match_endpoint(match_id: str, store: MatchStore = Depends(get_store)):
    match = await run_in_threadpool(store.get, match_id)
    if not match:
        raise not_found(f"Match {match_id} not found")
    return match.to_document()

@router.get("/{match_id}/payments")
async def get_payment_summary_endpoint(match_id: str, store: MatchStore = Depends(get_store)):
    summary = await run_in_threadpool(store.get_payment_summary, match_id)
    if not summary:
        raise not_found(f"No payment summary for {match_id}")
    return summary
