from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
)

from otpauth.api.schemas import (
    AdminLoginRequest,
    AdminProfileResponse,
    Envelope,
    RequestOtpRequest,
    TokenResponse,
    UpdateProfileRequest,
    UpdateUserStatusRequest,
    UserListResponse,
    UserResponse,
    VerifyOtpRequest,
)
from otpauth.logging import get_logger
from otpauth.service.rate_limit import RateLimitResult, client_identity
from otpauth.service.runtime import get_runtime
from otpauth.service.transaction import get_tx
from otpauth.storage.models import Admin, User, UserSearchParams, UserStatus

logger = get_logger(__name__)

API_PREFIX = "/api/v1"

router = APIRouter(prefix=API_PREFIX)


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(
    request: Request, group: str, *, response: Optional[Response] = None
) -> RateLimitResult:
    """Count this request against ``group`` and set the X-RateLimit headers.

    Raises:
        HTTPException with 429 if the caller is over the limit
    """
    runtime = get_runtime()
    max_requests, window_seconds, trust_forwarded = runtime.settings.rate_limit_for(
        group
    )
    identity = client_identity(request, trust_forwarded)
    result = await runtime.rate_limiter.check(
        group, identity, max_requests, window_seconds
    )
    if response is not None:
        result.apply_headers(response)
    if not result.allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers=result.headers(),
        )
    return result


async def get_current_user(
    request: Request,
    response: Response,
    tx=Depends(get_tx),
    authorization: Optional[str] = Header(None),
) -> User:
    await _enforce_rate_limit(request, "user", response=response)
    return await asyncio.to_thread(
        get_runtime().auth.authenticate_user, tx, authorization
    )


async def get_current_admin(
    request: Request,
    response: Response,
    tx=Depends(get_tx),
    authorization: Optional[str] = Header(None),
) -> Admin:
    await _enforce_rate_limit(request, "admin", response=response)
    return await asyncio.to_thread(
        get_runtime().auth.authenticate_admin, tx, authorization
    )


async def get_sudo_admin(admin: Admin = Depends(get_current_admin)) -> Admin:
    return get_runtime().auth.require_sudo(admin)


# -- auth ---------------------------------------------------------------------


@router.post("/auth/request-otp", response_model=Envelope, tags=["auth"])
async def request_otp(
    body: RequestOtpRequest,
    request: Request,
    response: Response,
    tx=Depends(get_tx),
):
    """Issue a one-time code for a phone number.

    Returns the login session token; the code itself travels out of band.

    Raises:
        403: If the user is disabled
        429: If rate limited or an OTP was issued too recently
    """
    await _enforce_rate_limit(request, "auth", response=response)
    session_token = await get_runtime().auth.login(tx, body.phone_number)
    return Envelope(status="ok", data=TokenResponse(token=session_token))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(
    body: VerifyOtpRequest,
    request: Request,
    response: Response,
    tx=Depends(get_tx),
    authorization: Optional[str] = Header(None),
):
    """Exchange a login session token plus code for a user bearer token.

    Raises:
        401 invalid_code: Wrong code, or the session was already used
        401 session_corrupted: The try budget is spent; request a new code.
            This is an invalid_code refinement, so clients that only check for
            401 treat it the same way
        401 session_not_found: Unknown or expired session token
        403 user_disabled: The user was disabled after the code was issued
    """
    await _enforce_rate_limit(request, "auth", response=response)
    runtime = get_runtime()
    session_token = _session_token_from_header(authorization)
    user = await runtime.auth.verify(tx, session_token, body.code)
    return Envelope(
        status="ok", data=TokenResponse(token=runtime.auth.issue_user_token(user))
    )


def _session_token_from_header(authorization: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    raise _http_error("unauthorized", "missing login session token", status_code=401)


@router.post("/auth/admin", response_model=Envelope, tags=["auth"])
async def admin_login(
    body: AdminLoginRequest,
    request: Request,
    response: Response,
    tx=Depends(get_tx),
):
    await _enforce_rate_limit(request, "auth", response=response)
    runtime = get_runtime()
    admin = await asyncio.to_thread(
        runtime.auth.admin_login, tx, body.username, body.password
    )
    return Envelope(
        status="ok", data=TokenResponse(token=runtime.auth.issue_admin_token(admin))
    )


# -- user ---------------------------------------------------------------------


@router.get("/user/profile", response_model=Envelope, tags=["user"])
async def get_profile(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.put("/user/profile", response_model=Envelope, tags=["user"])
async def update_profile(
    body: UpdateProfileRequest,
    user: User = Depends(get_current_user),
    tx=Depends(get_tx),
):
    updated = await asyncio.to_thread(
        get_runtime().auth.update_profile,
        tx,
        user,
        body.first_name,
        body.last_name,
    )
    return Envelope(status="ok", data=UserResponse.from_model(updated))


# -- admin --------------------------------------------------------------------


@router.get("/admin/profile", response_model=Envelope, tags=["admin"])
async def get_admin_profile(admin: Admin = Depends(get_current_admin)):
    return Envelope(status="ok", data=AdminProfileResponse.from_model(admin))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def search_users(
    admin: Admin = Depends(get_current_admin),
    tx=Depends(get_tx),
    id: Optional[int] = Query(None, ge=1),
    phone_number: Optional[str] = Query(None, max_length=16),
    first_name: Optional[str] = Query(None, max_length=100),
    last_name: Optional[str] = Query(None, max_length=100),
    status: Optional[int] = Query(None, ge=1, le=2),
    limit: int = Query(10),
    offset: int = Query(0),
    sort_by: str = Query("id"),
    sort_order: str = Query("asc"),
):
    params = UserSearchParams(
        id=id,
        phone_number=phone_number,
        first_name=first_name,
        last_name=last_name,
        status=UserStatus(status) if status is not None else None,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order.lower(),
    )
    users, total = await asyncio.to_thread(
        get_runtime().admin.search_users, tx, params
    )
    return Envelope(
        status="ok",
        data=UserListResponse(
            users=[UserResponse.from_model(u) for u in users], total=total
        ),
    )


@router.get("/admin/user/{user_id}", response_model=Envelope, tags=["admin"])
async def get_user_detail(
    user_id: int = Path(..., ge=1),
    admin: Admin = Depends(get_current_admin),
    tx=Depends(get_tx),
):
    user = await asyncio.to_thread(get_runtime().admin.get_user, tx, user_id)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.patch("/admin/user/{user_id}/status", response_model=Envelope, tags=["admin"])
async def update_user_status(
    body: UpdateUserStatusRequest,
    user_id: int = Path(..., ge=1),
    admin: Admin = Depends(get_sudo_admin),
    tx=Depends(get_tx),
):
    user = await asyncio.to_thread(
        get_runtime().admin.update_user_status, tx, user_id, body.status
    )
    logger.info("admin_user_status_changed", admin_id=admin.id, user_id=user_id)
    return Envelope(status="ok", data=UserResponse.from_model(user))
