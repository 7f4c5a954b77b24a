"""
Core dependencies for route protection and pipeline access
"""

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.core.context import PipelineContext
from app.database.supabase_client import get_supabase
from supabase import Client
from typing import Any, Dict
import hashlib
import logging
import time

logger = logging.getLogger(__name__)

security = HTTPBearer()

# In-memory cache for token lookups to reduce Supabase auth calls (e.g. SSE reconnects with same token)
_AUTH_USER_CACHE: Dict[str, tuple] = {}
_AUTH_CACHE_TTL_SEC = 60
_AUTH_CACHE_MAX_SIZE = 500


def get_context(request: Request) -> PipelineContext:
    return request.app.state.context


def _lookup_user(token: str, supabase: Client) -> Dict[str, Any]:
    cache_key = hashlib.sha256(token.encode()).hexdigest()
    now = time.monotonic()
    cached = _AUTH_USER_CACHE.get(cache_key)
    if cached and cached[1] > now:
        return cached[0]
    try:
        response = supabase.auth.get_user(jwt=token)
    except Exception as e:
        logger.info(f"Token validation failed: {e}")
        response = None
    if not response or not response.user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_data = {"id": response.user.id, "email": response.user.email}
    if len(_AUTH_USER_CACHE) >= _AUTH_CACHE_MAX_SIZE:
        _AUTH_USER_CACHE.clear()
    _AUTH_USER_CACHE[cache_key] = (user_data, now + _AUTH_CACHE_TTL_SEC)
    return user_data


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(security),
    supabase: Client = Depends(get_supabase)
) -> dict:
    """Extract current user info from the bearer token"""
    return _lookup_user(credentials.credentials, supabase)
