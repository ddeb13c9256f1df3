"""
Dependency injection functions for FastAPI.
Provides database sessions and authentication dependencies for REST
requests and WebSocket handshakes.
"""
import logging
from typing import Generator, Optional
from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from core.audit_logger import audit_logger
from core.config import settings
from core.security import InvalidCredentials, Principal, hash_token, verify_access_token
from db.database import SessionLocal

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Principal:
    """
    Authenticate a REST request.

    The credential is read from the auth cookie, or from an
    ``Authorization: Bearer`` header for non-browser clients.

    Raises:
        HTTPException: 401 if the credential is missing, invalid or expired
    """
    token = request.cookies.get(settings.auth_cookie_name)
    if not token and credentials is not None:
        token = credentials.credentials

    try:
        return verify_access_token(token)
    except InvalidCredentials as e:
        audit_logger.log_auth_failure(
            ip_address=request.client.host if request.client else None,
            reason=e.reason,
            transport="http"
        )
        detail = "Session expired" if e.reason == "expired" else "Not authenticated"
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )


def authenticate_websocket(websocket: WebSocket) -> Optional[Principal]:
    """
    Authenticate a WebSocket handshake.

    Reads the credential from the auth cookie sent with the upgrade request.
    Verification is local, so no database lookup happens here.

    Returns:
        Principal if the credential is valid, None otherwise
    """
    token = websocket.cookies.get(settings.auth_cookie_name)
    ip_address = websocket.client.host if websocket.client else None

    try:
        principal = verify_access_token(token)
    except InvalidCredentials as e:
        audit_logger.log_auth_failure(
            ip_address=ip_address,
            reason=e.reason,
            transport="websocket",
            token_fingerprint=hash_token(token)[:16] if token else None
        )
        return None

    audit_logger.log_auth_success(principal.id, ip_address=ip_address, transport="websocket")
    return principal
