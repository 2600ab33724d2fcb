# routers/auth.py — Authentication endpoints with rotating refresh tokens
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, RefreshRequest, LogoutRequest,
    ForgotPasswordRequest, ResetPasswordRequest, ChangePasswordRequest, AcceptInvitationRequest,
    get_current_user, CurrentUser,
)
from clock import Clock, get_clock
from database import get_db_session
from mailer import Mailer, get_mailer
from pagination import ok
from rate_limit import limiter, REGISTER_LIMIT, LOGIN_LIMIT, REFRESH_LIMIT, FORGOT_PASSWORD_LIMIT
from services.notifications import NotificationsService

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])

FORGOT_PASSWORD_MESSAGE = "Si el email está registrado, recibirás instrucciones para restablecer tu contraseña"


@router.post("/register", status_code=201)
@limiter.limit(REGISTER_LIMIT)
async def register(
    data: UserRegister,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account"""
    return ok(await AuthService.register(data, db, request))


@router.post("/login")
@limiter.limit(LOGIN_LIMIT)
async def login(
    credentials: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    return ok(await AuthService.login(credentials, db, request))


@router.post("/refresh")
@limiter.limit(REFRESH_LIMIT)
async def refresh_token(
    data: RefreshRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a new pair (the old one is revoked)"""
    return ok(await AuthService.refresh(data.refresh_token, db, request))


@router.post("/logout")
async def logout(
    data: Optional[LogoutRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Revoke the given refresh token, or every session of the user when none is sent"""
    await AuthService.logout(user.id, data.refresh_token if data else None, db)
    return ok({"success": True})


@router.post("/forgot-password")
@limiter.limit(FORGOT_PASSWORD_LIMIT)
async def forgot_password(
    data: ForgotPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    mailer: Mailer = Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    """Always answers success so account existence is not disclosed"""
    token = await AuthService.request_password_reset(data.email, db)
    if token:
        user = await AuthService.get_user_by_email(data.email, db)
        await NotificationsService(db, mailer, clock).send_password_reset(user.email, user.full_name, token)
    return ok({"success": True, "message": FORGOT_PASSWORD_MESSAGE})


@router.post("/reset-password")
async def reset_password(
    data: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db_session),
):
    await AuthService.reset_password(data, db)
    return ok({"success": True})


@router.post("/change-password")
async def change_password(
    data: ChangePasswordRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await AuthService.change_password(user.id, data, db)
    return ok({"success": True})


@router.get("/profile")
async def get_profile(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Current user with organisation memberships"""
    profile = user.model_dump(mode="json", by_alias=True)
    profile["organizations"] = await AuthService.get_memberships(user.id, db)
    return ok(profile)


@router.post("/accept-invitation")
async def accept_invitation(
    data: AcceptInvitationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Join an organisation from an invitation token, creating the account if needed"""
    return ok(await AuthService.accept_invitation(data, db, request))
