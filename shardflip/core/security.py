import secrets
from typing import Optional

from fastapi import HTTPException, Request, status
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner

SESSION_COOKIE = "session"


def _signer(secret_key: str) -> TimestampSigner:
    return TimestampSigner(secret_key, salt="shardflip-identity")


def issue_token(secret_key: str, address: str) -> str:
    """Sign a wallet address into a bearer token."""
    return _signer(secret_key).sign(address.strip().lower().encode("utf-8")).decode("utf-8")


def read_token(secret_key: str, token: str, max_age: int) -> Optional[str]:
    """Return the address inside a valid token, or None if it is forged or expired."""
    try:
        return _signer(secret_key).unsign(token, max_age=max_age).decode("utf-8")
    except (SignatureExpired, BadSignature):
        return None


def _token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.cookies.get(SESSION_COOKIE)


def current_identity(request: Request) -> str:
    """FastAPI dependency: the caller's wallet address, from a signed token."""
    settings = request.app.state.settings
    token = _token_from_request(request)
    address = (
        read_token(settings.security.secret_key, token, settings.security.token_max_age_seconds)
        if token
        else None
    )
    if not address:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return address


def require_api_key(request: Request) -> bool:
    """FastAPI dependency guarding mirror writes with the shared X-API-Key."""
    expected = request.app.state.settings.security.api_key
    provided = request.headers.get("X-API-Key", "")
    if not expected or not secrets.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: Invalid API key"
        )
    return True
