"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Whoop Bridge"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- WHOOP OAuth ---
    whoop_client_id: str
    whoop_client_secret: str  # server-side only
    whoop_redirect_uri: str
    whoop_api_base: str = "https://api.prod.whoop.com/developer/v2"
    whoop_auth_url: str = "https://api.prod.whoop.com/oauth/oauth2/auth"
    whoop_token_url: str = "https://api.prod.whoop.com/oauth/oauth2/token"
    verify_oauth_state: bool = True

    # --- Internal API key for the assistant calling /whoop/* ---
    internal_api_key: str

    # --- Storage ---
    token_file: str = "data/token.json"  # point at a persistent disk in production

    # --- Upstream HTTP ---
    http_timeout_seconds: float = 10.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
