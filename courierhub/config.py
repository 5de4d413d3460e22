import logging
import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production

    # Server
    courierhub_host: str = "0.0.0.0"
    courierhub_port: int = 8000

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/courierhub.db"

    # Auth (tokens are minted by the identity provider; we only verify them)
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7 days

    # Escrow
    escrow_reserve_pct: float = 0.5  # of item_price + max_fee, held at listing creation
    escrow_final_pct: float = 0.5  # of item_price + accepted fee, charged at completion
    traveler_payout_pct: float = 0.95  # of item_price + accepted fee, paid to the traveler
    max_topup_amount: float = 10_000.00

    # Bidding
    otp_length: int = 6
    bid_expiry_seconds: int = 20

    # Proximity / live location
    live_move_threshold_km: float = 0.1
    live_rescan_interval_seconds: int = 5 * 60
    live_location_timeout_seconds: int = 2 * 60
    live_push_batch_size: int = 3
    transient_notification_seconds: int = 60
    nearby_default_radius_km: float = 5.0
    nearby_results_limit: int = 10

    # Background sweeps
    stale_location_sweep_seconds: int = 60
    rematch_sweep_seconds: int = 60
    bid_expiry_sweep_seconds: int = 30

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()

# Warn on insecure defaults (logged at startup, not a hard error for dev convenience)
_logger = logging.getLogger("courierhub.config")
_INSECURE_SECRETS = {
    "dev-secret-change-in-production",
    "change-me-to-a-random-string",
}


def validate_security_posture(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

    if cfg.jwt_secret_key in _INSECURE_SECRETS:
        if is_prod:
            raise RuntimeError(
                "FATAL: JWT_SECRET_KEY is set to an insecure default. "
                "Set a strong random secret via the JWT_SECRET_KEY environment variable before deploying to production."
            )
        warnings.warn(
            "JWT_SECRET_KEY is set to the default insecure value. "
            "Set a strong random secret via the JWT_SECRET_KEY environment variable for production.",
            stacklevel=1,
        )

    if cfg.cors_origins == "*":
        if is_prod:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS cannot be '*' in production. "
                "Set explicit trusted origins via the CORS_ORIGINS environment variable."
            )
        _logger.warning(
            "CORS_ORIGINS is set to '*' (allow all). "
            "Configure specific origins for production via the CORS_ORIGINS environment variable."
        )

    if cfg.traveler_payout_pct <= 0 or cfg.traveler_payout_pct > 1:
        raise RuntimeError("TRAVELER_PAYOUT_PCT must be in (0, 1]")
    if cfg.escrow_reserve_pct < 0 or cfg.escrow_final_pct < 0:
        raise RuntimeError("Escrow percentages cannot be negative")


validate_security_posture(settings)
