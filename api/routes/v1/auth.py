"""
api/routes/v1/auth.py -- Session endpoints.

Routes:
  POST /api/v1/auth/login   -- email/password login; returns a bearer token
  POST /api/v1/auth/logout  -- revokes the presented token
  GET  /api/v1/auth/me      -- the authenticated principal

Security:
  POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT, default 10/minute).
  AuthService.login() equalizes timing between unknown email and wrong password
      and raises one InvalidCredentials for both.
  Cache-Control: no-store on login responses -- tokens must not be cached.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import LoginRequest, LoginResponse, MeResponse, MessageResponse
from auth.dependencies import get_bearer_token, get_current_principal
from auth.models import Principal

# Auth policy:
# - POST /api/v1/auth/login:   public -- the login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:  requires a valid bearer token (the one being revoked)
# - GET  /api/v1/auth/me:      requires auth (get_current_principal)
router = APIRouter()


@limiter.limit(login_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and return a session token."""
    # Failed logins are audited with the attempted email and no actor id.
    request.state.audit_actor_email = body.email
    request.state.audit_after = {"email": body.email}

    token, principal = request.app.state.auth_service.login(body.email, body.password)
    request.state.principal = principal
    expires_in = request.app.state.settings.token_expire_hours * 3600
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            user=MeResponse.from_principal(principal),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> MessageResponse:
    """Revoke the presented token. Later requests with it get 401."""
    request.app.state.auth_service.logout(get_bearer_token(request))
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return the authenticated principal."""
    return MeResponse.from_principal(principal)
