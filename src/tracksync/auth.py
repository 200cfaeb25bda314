import hmac

from fastapi import Header, HTTPException, Request
from fastapi.responses import JSONResponse

from tracksync.config import settings

SESSION_COOKIE_NAME = "tracksync_session"


def _matches(supplied: str | None, expected: str) -> bool:
    return supplied is not None and hmac.compare_digest(supplied.encode(), expected.encode())


def check_auth(request: Request) -> bool:
    """Check the session cookie or an `Authorization: Bearer <secret>` header without raising."""
    session = request.cookies.get(SESSION_COOKIE_NAME)
    header = request.headers.get("authorization", "")
    bearer = header.removeprefix("Bearer ") if header.startswith("Bearer ") else None
    return _matches(session, settings.secret_key) or _matches(bearer, settings.secret_key)


def verify_auth(request: Request) -> None:
    """Dependency to verify the caller is an authenticated admin."""
    if not check_auth(request):
        raise HTTPException(status_code=401, detail="Not authenticated")


def verify_cron(authorization: str | None = Header(default=None)) -> None:
    """Dependency guarding the scheduler trigger when a cron secret is configured."""
    if settings.cron_secret and not _matches(authorization, f"Bearer {settings.cron_secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


def verify_webhook(x_webhook_secret: str | None = Header(default=None)) -> None:
    """Dependency checking the shared secret carriers send with pushed events."""
    if settings.webhook_secret and not _matches(x_webhook_secret, settings.webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid signature")


def login(secret: str) -> JSONResponse:
    """Verify secret and set session cookie."""
    if not _matches(secret, settings.secret_key):
        raise HTTPException(status_code=401, detail="Invalid secret")

    response = JSONResponse({"authenticated": True})
    response.set_cookie(
        SESSION_COOKIE_NAME,
        settings.secret_key,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=60 * 60 * 24 * 30,  # 30 days
    )
    return response


def logout() -> JSONResponse:
    """Clear session cookie."""
    response = JSONResponse({"authenticated": False})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response
