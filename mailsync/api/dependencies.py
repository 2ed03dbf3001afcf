import hmac
from typing import Iterator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from mailsync.config import settings
from mailsync.db.database import sync_session_factory

security = HTTPBearer(auto_error=False)


def get_db_session() -> Iterator[Session]:
    """
    Request-scoped session on the same synchronous engine the Celery tasks use.

    Services commit their own units of work; anything left pending is committed
    here, and an exception rolls the request back.
    """
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def verify_api_key(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> bool:
    """Require ``Authorization: Bearer <API_KEY>`` when an API key is configured."""
    if not settings.api_key:
        return True  # No API key required

    if credentials is None:
        detail = "API key required"
    elif not hmac.compare_digest(credentials.credentials, settings.api_key):
        detail = "Invalid API key"
    else:
        return True

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )
