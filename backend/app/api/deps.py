"""
Request dependencies shared by the v1 routers.

Authentication happens upstream; the account id arrives in the
``X-Account-Id`` header and is trusted as-is.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException

from backend.app.core.middleware import ACCOUNT_HEADER
from backend.app.services.engine import BroadcastEngine, get_engine


def engine_dep() -> BroadcastEngine:
    return get_engine()


def account_id(x_account_id: Optional[str] = Header(None, alias=ACCOUNT_HEADER)) -> Optional[str]:
    """Account id or None for anonymous callers."""
    return x_account_id or None


def require_account(x_account_id: Optional[str] = Header(None, alias=ACCOUNT_HEADER)) -> str:
    if not x_account_id:
        raise HTTPException(status_code=401, detail=f"{ACCOUNT_HEADER} header required")
    return x_account_id
