"""Auth API — signup, login, logout and the current principal.

Learn: Routes for the user credential lifecycle:
- POST /auth/signup → user + personal organization + session token
- POST /auth/login  → email/password → session token
- POST /auth/logout → delete the presented session
- GET  /auth/me     → who am I (user or API key)
- PATCH /auth/me    → update display name / avatar
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.dependencies import (
    Principal,
    bearer_token,
    get_current_principal,
    get_current_user,
)
from accesscore.db.engine import get_db
from accesscore.schemas.auth import (
    LoginRequest,
    PrincipalRead,
    SessionResponse,
    SignupRequest,
    UserRead,
    UserUpdate,
)
from accesscore.services.credential_service import CredentialService

router = APIRouter(prefix="/auth")


def _svc(db: AsyncSession = Depends(get_db)) -> CredentialService:
    return CredentialService(db)


# ─── Signup / login ─────────────────────────────────────


@router.post("/signup", response_model=SessionResponse, status_code=201)
async def signup(body: SignupRequest, svc: CredentialService = Depends(_svc)):
    """Create an account with its own organization and sign in."""
    user, org, session = await svc.signup(
        email=body.email,
        password=body.password,
        display_name=body.display_name,
    )
    return SessionResponse(
        token=session.token,
        expires_at=session.expires_at,
        user=UserRead.model_validate(user),
        organization_id=org.id,
    )


@router.post("/login", response_model=SessionResponse)
async def login(body: LoginRequest, svc: CredentialService = Depends(_svc)):
    """Login with email and password → session token."""
    user, session = await svc.login(body.email, body.password)
    return SessionResponse(
        token=session.token,
        expires_at=session.expires_at,
        user=UserRead.model_validate(user),
    )


@router.post("/logout", status_code=204)
async def logout(
    authorization: Optional[str] = Header(None),
    principal: Principal = Depends(get_current_user),
    svc: CredentialService = Depends(_svc),
):
    """Invalidate the session used for this request."""
    await svc.invalidate_session(bearer_token(authorization) or "")


# ─── Current principal ──────────────────────────────────


@router.get("/me", response_model=PrincipalRead)
async def get_me(
    principal: Principal = Depends(get_current_principal),
    svc: CredentialService = Depends(_svc),
):
    """Describe the authenticated principal."""
    if principal.is_key:
        return PrincipalRead(
            type=principal.kind,
            organization_id=principal.organization_id,
            project_id=principal.project_id,
            permissions=principal.permissions,
        )

    user = await svc.get_user(principal.user_id)
    return PrincipalRead(
        type=principal.kind,
        user=UserRead.model_validate(user),
        organization_id=principal.organization_id,
        project_id=principal.project_id,
    )


@router.patch("/me", response_model=UserRead)
async def update_me(
    body: UserUpdate,
    principal: Principal = Depends(get_current_user),
    svc: CredentialService = Depends(_svc),
):
    return await svc.update_profile(
        principal.user_id,
        display_name=body.display_name,
        avatar_url=body.avatar_url,
    )
