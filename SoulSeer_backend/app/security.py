import logging

from fastapi import HTTPException
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import HTTPConnection

from app.config import settings
from models.reader import Reader
from models.user import User


def _split_header_names(raw_value: str, fallback: list[str]) -> list[str]:
    names = [item.strip().lower() for item in (raw_value or "").split(",") if item.strip()]
    return names or fallback


USER_HEADER_NAMES = _split_header_names(settings.AUTH_USER_HEADERS, ["x-user-id"])
TOKEN_HEADER_NAMES = _split_header_names(settings.AUTH_TOKEN_HEADERS, ["authorization", "x-auth-token"])
JWT_SECRET = settings.AUTH_JWT_SECRET or "soulseer-dev-secret"
JWT_ALGORITHM = settings.AUTH_JWT_ALGORITHM or "HS256"
logger = logging.getLogger("soulseer.security")


def _mask_user_id(user_id: str | None) -> str:
    value = (user_id or "").strip()
    if not value:
        return "-"
    if len(value) <= 8:
        return value
    return f"{value[:4]}...{value[-4:]}"


def _audit_auth_failure(
    conn: HTTPConnection | None,
    reason: str,
    *,
    declared_user_id: str | None = None,
    token_present: bool = False,
) -> None:
    if not conn:
        logger.warning("AUTH_DENY reason=%s", reason)
        return
    path = getattr(getattr(conn, "url", None), "path", "-")
    method = getattr(conn, "method", "WS")
    client = getattr(conn, "client", None)
    ip = getattr(client, "host", "-") if client else "-"
    logger.warning(
        "AUTH_DENY reason=%s method=%s path=%s ip=%s declared=%s token_present=%s",
        reason,
        method,
        path,
        ip,
        _mask_user_id(declared_user_id),
        int(bool(token_present)),
    )


def _extract_declared_user_id(conn: HTTPConnection) -> str | None:
    headers = getattr(conn, "headers", None)
    if headers:
        for name in USER_HEADER_NAMES:
            value = headers.get(name)
            if value:
                return value.strip()
    query = getattr(conn, "query_params", None)
    if query:
        value = query.get("user_id")
        if value:
            return value.strip()
    return None


def _extract_auth_token(conn: HTTPConnection) -> str | None:
    headers = getattr(conn, "headers", None)
    token = None
    if headers:
        for name in TOKEN_HEADER_NAMES:
            value = headers.get(name)
            if not value:
                continue
            raw = value.strip()
            if not raw:
                continue
            if name == "authorization":
                if raw.lower().startswith("bearer "):
                    raw = raw.split(" ", 1)[1].strip()
                elif " " in raw:
                    # only Bearer is supported
                    continue
            token = raw
            if token:
                break
    if not token:
        query = getattr(conn, "query_params", None)
        if query:
            token = query.get("token") or query.get("access_token")
            if token:
                token = token.strip()
    return token or None


def create_access_token(user_id: str) -> str:
    return jwt.encode({"sub": user_id}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _decode_token_user_id(token: str, conn: HTTPConnection | None = None) -> str:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        _audit_auth_failure(conn, "invalid_token", token_present=True)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    subject = payload.get("sub")
    if not subject:
        _audit_auth_failure(conn, "token_missing_sub", token_present=True)
        raise HTTPException(status_code=401, detail="Credentials carry no user")
    return str(subject)


def resolve_user_id(conn: HTTPConnection, *, required: bool = True) -> str | None:
    """Current user id from a bearer token, else from the identity header."""
    token = _extract_auth_token(conn)
    declared_user_id = _extract_declared_user_id(conn)
    if token:
        token_user_id = _decode_token_user_id(token, conn)
        if declared_user_id and declared_user_id != token_user_id:
            _audit_auth_failure(conn, "token_declared_mismatch", declared_user_id=declared_user_id, token_present=True)
            raise HTTPException(status_code=403, detail="Credentials do not match the declared user")
        return token_user_id
    if declared_user_id:
        return declared_user_id
    if required:
        _audit_auth_failure(conn, "missing_identity")
        raise HTTPException(status_code=401, detail="Unauthorized")
    return None


def verify_request_user(request: HTTPConnection) -> str:
    return resolve_user_id(request, required=True)


async def require_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def require_admin(db: AsyncSession, user_id: str) -> User:
    user = await require_user(db, user_id)
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


async def require_own_reader(db: AsyncSession, user_id: str) -> Reader:
    reader = (await db.execute(select(Reader).where(Reader.user_id == user_id))).scalar_one_or_none()
    if not reader:
        raise HTTPException(status_code=404, detail="Reader profile not found")
    return reader
