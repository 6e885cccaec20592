"""WHOOP OAuth2 authorization-code flow and credential status."""

from __future__ import annotations

import html
import logging

from fastapi import APIRouter, Query
from fastapi.responses import HTMLResponse, RedirectResponse

from src.dependencies import AppSettings, Services
from src.whoop.base import ApiError

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("whoop_bridge.auth")

_PAGE = """
<html>
  <body style="font-family: sans-serif; padding: 40px; text-align: center;">
    {body}
  </body>
</html>
"""


def _failure_page(message: str, status_code: int) -> HTMLResponse:
    body = (
        "<h1>Authorization Failed</h1>"
        f"<p>{html.escape(message)}</p>"
        '<a href="/auth/start">Try Again</a>'
    )
    return HTMLResponse(content=_PAGE.format(body=body), status_code=status_code)


@router.get("/start")
async def start(services: Services) -> RedirectResponse:
    """Redirect the user to WHOOP with a fresh anti-forgery state."""
    state = services.states.issue()
    return RedirectResponse(services.manager.authorization_url(state))


@router.get("/callback", response_class=HTMLResponse)
async def callback(
    services: Services,
    settings: AppSettings,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
) -> HTMLResponse:
    """Exchange the returned authorization code for the initial credential."""
    if error:
        logger.warning("WHOOP authorization denied: %s", error)
        return _failure_page(error_description or error, 400)

    if not code:
        return HTMLResponse(content="Missing authorization code", status_code=400)

    if settings.verify_oauth_state and not services.states.consume(state):
        logger.warning("Rejected OAuth callback with unknown or expired state")
        return _failure_page("Invalid or expired state. Please start again.", 400)

    try:
        await services.manager.exchange_code(code)
    except ApiError as exc:
        return _failure_page(exc.message or "Failed to exchange code for token", 500)

    body = (
        "<h1>WHOOP Connected!</h1>"
        "<p>Authorization successful. You can now return to your assistant.</p>"
        '<p style="color: #888; font-size: 14px;">This window can be closed.</p>'
    )
    return HTMLResponse(content=_PAGE.format(body=body))


@router.get("/status")
async def status(services: Services) -> dict:
    """Report whether a credential is stored and whether it is expired."""
    credential = services.store.load()
    if credential is None:
        return {
            "authorized": False,
            "message": "Not authorized. Please visit /auth/start",
        }

    return {
        "authorized": True,
        "expired": services.store.is_expired(),
        "expires_at": credential.expires_at_iso,
        "updated_at": credential.updated_at_iso,
    }
