"""
backend/betmenow/config.py

Purpose:
    Central settings loading for the bet service.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017/?replicaSet=rs0"
    MONGO_DB: str = "betmenow"
    MONGO_MAX_POOL_SIZE: int = 25
    MONGO_MIN_POOL_SIZE: int = 5
    JWT_SECRET: str = "dev-only-secret-change-me"
    JWT_SECRET_OLD: str = ""  # Set during rotation; cleared after refresh expiry
    BACKEND_CORS_ORIGINS: str = "http://localhost:8081"
    COOKIE_SECURE: bool = False  # Set True in production (HTTPS)
    LOG_LEVEL: str = "INFO"

    # JWT settings
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Bets
    BET_DESCRIPTION_MAX_LENGTH: int = 500
    BET_MAX_RECIPIENTS: int = 20
    BET_LIST_MAX_LIMIT: int = 200

    # Payment deep link (best effort, never authoritative)
    PAYMENT_LINK_ENABLED: bool = True
    PAYMENT_LINK_SCHEME: str = "venmo://paycharge"

    # Leaderboard scoring (40% win rate, 40% net winnings, 20% activity)
    LEADERBOARD_WIN_RATE_WEIGHT: float = 0.4
    LEADERBOARD_NET_WINNINGS_WEIGHT: float = 0.4
    LEADERBOARD_ACTIVITY_WEIGHT: float = 0.2
    LEADERBOARD_NET_WINNINGS_BENCHMARK: float = 1000.0
    LEADERBOARD_ACTIVITY_BENCHMARK: int = 20

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


settings = Settings()
