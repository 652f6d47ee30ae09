from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    APP_NAME: str = "Survivor Arena"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./arena.db"

    # Ledger, signing authority and exchange endpoints
    SOLANA_RPC_URL: str = "https://api.devnet.solana.com"
    TREASURY_ADDRESS: str = "YOUR_TREASURY_ADDRESS_HERE"
    SIGNER_URL: str = "http://localhost:8700"
    SIGNER_API_KEY: str = "YOUR_SIGNER_API_KEY_HERE"
    EXCHANGE_API_URL: str = "https://quote-api.jup.ag/v6"
    HTTP_TIMEOUT_SEC: float = 15.0

    # Payout asset, frozen into each match at creation
    SOL_MINT: str = "So11111111111111111111111111111111111111112"
    PAYOUT_ASSET_MINT: str = "YOUR_PAYOUT_ASSET_MINT_HERE"
    TOKEN_SYMBOL: str = "BALL"
    ENTRY_FEE_SOL: float = 0.01
    MAX_PLAYERS: int = 5

    # Timers (seconds)
    COUNTDOWN_DURATION_SEC: int = 15
    ROUND_DURATION_SEC: int = 5
    ROUND_BUFFER_SEC: int = 5
    ACTION_GRACE_SEC: int = 10
    STALE_LOBBY_MINUTES: int = 10

    # Per-match processing lease
    LOCK_TTL_SEC: int = 30
    LEASE_BACKEND: str = "memory" # "memory" (single instance) or "database"

    CLIENT_TIMING_TOLERANCE_MS: int = 1500

    # Money movement
    PAYMENT_TOLERANCE: float = 0.95
    REFUND_TRANSFER_FEE_SOL: float = 0.0005
    SWAP_FEE_BUFFER_SOL: float = 0.003
    SLIPPAGE_BPS: int = 300
    TRANSFER_MAX_ATTEMPTS: int = 3
    TRANSFER_BACKOFF_SEC: float = 2.0

    SECRET_KEY: str = "YOUR_SECRET_KEY_HERE"

    class Config:
        env_file = ".env"

settings = Settings()
