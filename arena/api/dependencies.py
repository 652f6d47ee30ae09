from typing import Optional

import httpx

from arena.core.config import Settings, settings
from arena.core.database import SessionLocal, engine, init_db
from arena.services.action_service import ActionService
from arena.services.exchange import JupiterExchange
from arena.services.ledger import SolanaRpcClient
from arena.services.lobby_service import LobbyService
from arena.services.locks import build_lease_store
from arena.services.match_store import MatchStore
from arena.services.payment_verifier import PaymentVerifier
from arena.services.settlement_service import SettlementOrchestrator
from arena.services.signer import RemoteSigner
from arena.services.tick_service import TickProcessor
from arena.services.treasury import Treasury


class ArenaServices:
    """Wires the store, external clients and services from one Settings object."""

    def __init__(self, config: Settings, session_factory=SessionLocal):
        self.http = httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SEC)
        self.store = MatchStore(session_factory)
        self.leases = build_lease_store(config.LEASE_BACKEND, session_factory, config.LOCK_TTL_SEC)

        self.ledger = SolanaRpcClient(config.SOLANA_RPC_URL, http_client=self.http)
        self.signer = RemoteSigner(config.SIGNER_URL, config.SIGNER_API_KEY, http_client=self.http)
        self.exchange = JupiterExchange(config.EXCHANGE_API_URL, http_client=self.http)
        self.treasury = Treasury(config.TREASURY_ADDRESS, self.ledger, self.signer)
        self.verifier = PaymentVerifier(self.ledger, config.TREASURY_ADDRESS, config.PAYMENT_TOLERANCE)

        self.settlement = SettlementOrchestrator(
            self.store,
            self.treasury,
            self.exchange,
            self.ledger,
            sol_mint=config.SOL_MINT,
            slippage_bps=config.SLIPPAGE_BPS,
            fee_buffer_sol=config.SWAP_FEE_BUFFER_SOL,
            max_attempts=config.TRANSFER_MAX_ATTEMPTS,
            backoff_sec=config.TRANSFER_BACKOFF_SEC,
        )
        self.lobby = LobbyService(
            self.store, self.ledger, self.verifier, self.treasury, settings=config, leases=self.leases,
        )
        self.actions = ActionService(
            self.store,
            grace_sec=config.ACTION_GRACE_SEC,
            tolerance_ms=config.CLIENT_TIMING_TOLERANCE_MS,
        )
        self.ticks = TickProcessor(
            self.store,
            self.leases,
            self.settlement,
            round_buffer_sec=config.ROUND_BUFFER_SEC,
        )

    async def aclose(self) -> None:
        for client in (self.ledger, self.signer, self.exchange):
            await client.aclose()
        await self.http.aclose()


_services: Optional[ArenaServices] = None


def get_services() -> ArenaServices:
    global _services
    if _services is None:
        init_db(engine)
        _services = ArenaServices(settings)
    return _services


async def close_services() -> None:
    global _services
    if _services is not None:
        await _services.aclose()
        _services = None


def get_store() -> MatchStore:
    return get_services().store

def get_lobby_service() -> LobbyService:
    return get_services().lobby

def get_action_service() -> ActionService:
    return get_services().actions

def get_tick_processor() -> TickProcessor:
    return get_services().ticks

def get_settlement_service() -> SettlementOrchestrator:
    return get_services().settlement
