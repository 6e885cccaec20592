"""WHOOP bridge core.

Brokers access to the WHOOP developer API on behalf of a single user: owns
the OAuth credential, refreshes it proactively and on 401, and aggregates
sleep, cycle and recovery resources into assistant-friendly summaries.

Core modules:
    base           — Credential, error taxonomy, tagged Outcome
    token_store    — Persisted credential store and storage backends
    token_manager  — Authorization-code / refresh grants, OAuth state
    client         — Authenticated fetcher with one refresh-and-retry on 401
    aggregation    — Daily summary, weekly report, recovery history
    config_loader  — Load/validate/hot-reload insights_config.yaml
    services       — Per-app wiring of the above
"""

from src.whoop.aggregation import AggregationEngine
from src.whoop.base import ApiError, AuthRequired, Credential, NoData, Outcome, WhoopError
from src.whoop.client import WhoopClient
from src.whoop.config_loader import InsightsConfig, get_insights_config
from src.whoop.token_manager import OAuthStateRegistry, TokenManager
from src.whoop.token_store import FileTokenBackend, MemoryTokenBackend, TokenStore

__all__ = [
    "AggregationEngine",
    "ApiError",
    "AuthRequired",
    "Credential",
    "NoData",
    "Outcome",
    "WhoopError",
    "WhoopClient",
    "InsightsConfig",
    "get_insights_config",
    "OAuthStateRegistry",
    "TokenManager",
    "FileTokenBackend",
    "MemoryTokenBackend",
    "TokenStore",
]
