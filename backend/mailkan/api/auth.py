"""Request gate for the board API.

Login sessions live in front of this service; all the API needs to know is
whether a call is authorized. With no ``API_TOKEN`` configured the gate is
open (local development).
"""

import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request

from mailkan.config import Settings
from mailkan.services.live_sync import LiveEmailService


def get_service(request: Request) -> LiveEmailService:
    return request.app.state.service


def get_settings(request: Request) -> Settings:
    return request.app.state.service.settings


def _presented_token(authorization: Optional[str], x_api_key: Optional[str]) -> Optional[str]:
    if x_api_key:
        return x_api_key
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


async def require_auth(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None),
) -> None:
    expected = get_settings(request).api_token
    if not expected:
        return
    token = _presented_token(authorization, x_api_key)
    if token is None or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Nicht angemeldet")
