"""Wiring for the bridge core.

One ``WhoopServices`` instance is built per application and stored on
``app.state.whoop``.  It owns the shared httpx client and hands the same
store, manager, client and engine to every request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from src.config import Settings
from src.whoop.aggregation import AggregationEngine
from src.whoop.client import WhoopClient
from src.whoop.config_loader import InsightsConfig
from src.whoop.token_manager import OAuthStateRegistry, TokenManager
from src.whoop.token_store import FileTokenBackend, TokenBackend, TokenStore

logger = logging.getLogger("whoop_bridge.services")


@dataclass
class WhoopServices:
    """Everything a request handler needs to talk to WHOOP."""

    http: httpx.AsyncClient
    store: TokenStore
    manager: TokenManager
    client: WhoopClient
    engine: AggregationEngine
    states: OAuthStateRegistry

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        backend: TokenBackend | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        insights: InsightsConfig | None = None,
    ) -> WhoopServices:
        """Build the service graph.

        Args:
            settings:  Application settings.
            backend:   Token storage; a JSON file at ``settings.token_file`` by default.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).
            insights:  Optional thresholds override.
        """
        http = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout_seconds),
            transport=transport,
        )
        store = TokenStore(backend or FileTokenBackend(Path(settings.token_file)))
        manager = TokenManager(
            store,
            http,
            client_id=settings.whoop_client_id,
            client_secret=settings.whoop_client_secret,
            redirect_uri=settings.whoop_redirect_uri,
            token_url=settings.whoop_token_url,
            auth_url=settings.whoop_auth_url,
        )
        client = WhoopClient(store, manager, http, settings.whoop_api_base)
        engine = AggregationEngine(client, config=insights)
        logger.info("WHOOP services ready (api=%s)", settings.whoop_api_base)
        return cls(
            http=http,
            store=store,
            manager=manager,
            client=client,
            engine=engine,
            states=OAuthStateRegistry(),
        )

    async def aclose(self) -> None:
        await self.http.aclose()
