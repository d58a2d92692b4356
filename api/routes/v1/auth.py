"""
api/routes/v1/auth.py -- Session endpoints.

Routes:
  POST /api/v1/auth/login    -- password login; access token in body, refresh token in cookie
  POST /api/v1/auth/refresh  -- rotate the refresh cookie, mint a new access token
  POST /api/v1/auth/logout   -- revoke the refresh token, clear the cookie
  GET  /api/v1/auth/me       -- current identity (any role)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] SessionManager.authenticate() provides timing equalization -- never
       inline a user lookup + password check here.
  [M5] Cache-Control: no-store on login and refresh responses.
  The refresh token is never placed in a response body.
"""


from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.errors import AUTH_STATUS, auth_error_detail, client_meta
from api.limiter import limiter, login_limit, mutation_limit
from api.models import IdentitySummary, LoginRequest, LoginResponse, RefreshResponse, UserResponse
from auth.dependencies import get_current_identity
from auth.models import AuthError, AuthErrorKind, Identity
from auth.sessions import SessionManager
from auth.tokens import clear_refresh_cookie, refresh_cookie_name, set_refresh_cookie
from core.config import Settings

# Auth policy:
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:  public -- the refresh cookie is the credential
# - POST /api/v1/auth/logout:   public -- revoking a cookie needs no access token
# - GET  /api/v1/auth/me:       requires auth (get_current_identity)
router = APIRouter()


def _auth_failure(error: AuthError, settings: Settings, clear_cookie: bool = False) -> JSONResponse:
    resp = JSONResponse(status_code=AUTH_STATUS[error.kind], content={"error": auth_error_detail(error)})
    if clear_cookie:
        clear_refresh_cookie(resp, settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_limit)  # [H2] below @router so the registered endpoint is the limited one
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email, inactive account and wrong password all return the same
    401 invalid_credentials. A locked account returns 423 account_locked.
    """
    sessions: SessionManager = request.app.state.sessions
    settings: Settings = request.app.state.settings
    ip, user_agent = client_meta(request)

    result = sessions.authenticate(body.email, body.password, ip=ip, user_agent=user_agent)
    if isinstance(result, AuthError):
        return _auth_failure(result, settings)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.access_token_expire_seconds,
            user=IdentitySummary.from_domain(result.identity),
        ).model_dump(mode="json"),
    )
    set_refresh_cookie(resp, result.refresh_token, settings.secure_cookies, settings.refresh_token_expire_seconds)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/refresh", response_model=RefreshResponse)
@limiter.limit(mutation_limit)
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a rotated cookie.

    A replayed (already rotated) refresh token fails with 401 invalid_token
    and the cookie is cleared.
    """
    sessions: SessionManager = request.app.state.sessions
    settings: Settings = request.app.state.settings

    token = request.cookies.get(refresh_cookie_name(settings.secure_cookies))
    if not token:
        return _auth_failure(AuthError.of(AuthErrorKind.INVALID_TOKEN), settings)

    result = sessions.refresh(token)
    if isinstance(result, AuthError):
        return _auth_failure(result, settings, clear_cookie=True)

    resp = JSONResponse(
        status_code=200,
        content=RefreshResponse(
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106
            expires_in=settings.access_token_expire_seconds,
        ).model_dump(),
    )
    set_refresh_cookie(resp, result.refresh_token, settings.secure_cookies, settings.refresh_token_expire_seconds)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Revoke the refresh token (if any) and clear its cookie. Always 200."""
    sessions: SessionManager = request.app.state.sessions
    settings: Settings = request.app.state.settings

    sessions.logout(request.cookies.get(refresh_cookie_name(settings.secure_cookies)))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_refresh_cookie(resp, settings.secure_cookies)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(identity: Identity = Depends(get_current_identity)) -> UserResponse:
    """Return the identity behind the presented access token."""
    return UserResponse.from_domain(identity)
