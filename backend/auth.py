# auth.py — Authentication & organisation-scoped authorization for CumpliRos
# Features:
# - Short-lived HS256 access JWTs (sub, email, type, jti)
# - Opaque rotating refresh tokens, stored only as peppered SHA-256 hashes
# - Password policy (8+ chars, upper, lower, digit), bcrypt hashing
# - One-time hashed password-reset tokens
# - Invitation acceptance (membership + invitation flip in one transaction)
# - Membership-role checks per organisation and a platform-admin check

import os
import uuid
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import EmailStr, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine import Role, InvitationStatus
from database import get_db_session
from errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, UnauthorizedError
from models import (
    User, UserOrg, Organization, Invitation, RefreshToken, PasswordResetToken, utcnow,
)
from pagination import APIModel

logger = logging.getLogger("cumpliros.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set. Generated ephemeral key; sessions will not survive a restart."
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
REFRESH_TOKEN_PEPPER = os.getenv("REFRESH_TOKEN_PEPPER", "") or SECRET_KEY
PASSWORD_RESET_EXPIRE_MINUTES = int(os.getenv("PASSWORD_RESET_EXPIRE_MINUTES", "60"))
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

security = HTTPBearer(auto_error=False)


def validate_password_strength(v: str) -> str:
    if len(v) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"La contraseña debe tener al menos {MIN_PASSWORD_LENGTH} caracteres")
    if len(v) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"La contraseña no puede superar {MAX_PASSWORD_LENGTH} caracteres")
    if not any(c.isupper() for c in v):
        raise ValueError("La contraseña debe contener al menos una mayúscula")
    if not any(c.islower() for c in v):
        raise ValueError("La contraseña debe contener al menos una minúscula")
    if not any(c.isdigit() for c in v):
        raise ValueError("La contraseña debe contener al menos un número")
    return v


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(APIModel):
    email: EmailStr
    password: str
    full_name: str = Field(..., min_length=2, max_length=255)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class UserLogin(APIModel):
    email: EmailStr
    password: str


class RefreshRequest(APIModel):
    refresh_token: str


class LogoutRequest(APIModel):
    refresh_token: Optional[str] = None


class ForgotPasswordRequest(APIModel):
    email: EmailStr


class ResetPasswordRequest(APIModel):
    token: str = Field(..., min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        return validate_password_strength(v)


class ChangePasswordRequest(APIModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        return validate_password_strength(v)


class AcceptInvitationRequest(APIModel):
    token: str
    full_name: Optional[str] = Field(None, min_length=2, max_length=255)
    password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: Optional[str]) -> Optional[str]:
        return validate_password_strength(v) if v is not None else v


class UserSummary(APIModel):
    id: str
    email: str
    full_name: str


class TokenResponse(APIModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserSummary


class CurrentUser(APIModel):
    id: str
    email: str
    full_name: str
    active: bool


@dataclass
class OrgContext:
    """Result of the organisation authorization check for one request."""
    user: CurrentUser
    organization_id: str
    role: Role

    @property
    def user_id(self) -> str:
        return self.user.id


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Credential, session and invitation flows."""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=int(os.getenv("BCRYPT_ROUNDS", "12")))
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False

    @staticmethod
    def hash_token(token: str) -> str:
        return hashlib.sha256(f"{REFRESH_TOKEN_PEPPER}:{token}".encode("utf-8")).hexdigest()

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise UnauthorizedError("Token expirado")
        except JWTError:
            raise UnauthorizedError("Token inválido")

    @staticmethod
    def issue_tokens(user: User, db: AsyncSession, request: Optional[Request] = None) -> TokenResponse:
        """Mint an access JWT and a new refresh token row (caller commits)."""
        access_token = AuthService.create_access_token({"sub": user.id, "email": user.email})
        refresh_token = str(uuid.uuid4())
        db.add(RefreshToken(
            user_id=user.id,
            token_hash=AuthService.hash_token(refresh_token),
            expires_at=utcnow() + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
            ip_address=request.client.host if request and request.client else None,
            user_agent=request.headers.get("user-agent") if request else None,
        ))
        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            user=UserSummary(id=user.id, email=user.email, full_name=user.full_name),
        )

    @staticmethod
    async def _revoke_all(user_id: str, db: AsyncSession) -> None:
        await db.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=utcnow())
        )

    @staticmethod
    async def get_user_by_email(email: str, db: AsyncSession) -> Optional[User]:
        result = await db.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    @staticmethod
    async def register(data: UserRegister, db: AsyncSession, request: Optional[Request] = None) -> TokenResponse:
        email = data.email.lower()
        if await AuthService.get_user_by_email(email, db):
            raise ConflictError("El email ya está registrado")

        user = User(
            email=email,
            full_name=data.full_name.strip(),
            password_hash=AuthService.hash_password(data.password),
            active=True,
        )
        db.add(user)
        await db.flush()
        tokens = AuthService.issue_tokens(user, db, request)
        await db.commit()
        logger.info(f"User registered: {user.id}")
        return tokens

    @staticmethod
    async def login(data: UserLogin, db: AsyncSession, request: Optional[Request] = None) -> TokenResponse:
        user = await AuthService.get_user_by_email(data.email, db)
        if not user or not AuthService.verify_password(data.password, user.password_hash):
            raise UnauthorizedError("Credenciales inválidas")
        if not user.active:
            raise UnauthorizedError("Credenciales inválidas")

        tokens = AuthService.issue_tokens(user, db, request)
        await db.commit()
        return tokens

    @staticmethod
    async def refresh(refresh_token: str, db: AsyncSession, request: Optional[Request] = None) -> TokenResponse:
        token_hash = AuthService.hash_token(refresh_token)
        result = await db.execute(select(RefreshToken).where(RefreshToken.token_hash == token_hash))
        stored = result.scalar_one_or_none()
        if not stored or stored.revoked_at is not None:
            raise UnauthorizedError("Token de refresco inválido")
        if stored.expires_at <= utcnow():
            raise UnauthorizedError("Token de refresco expirado")

        user = await db.get(User, stored.user_id)
        if not user or not user.active:
            raise UnauthorizedError("Usuario inactivo")

        # Rotation: the presented token is single-use
        stored.revoked_at = utcnow()
        tokens = AuthService.issue_tokens(user, db, request)
        await db.commit()
        return tokens

    @staticmethod
    async def logout(user_id: str, refresh_token: Optional[str], db: AsyncSession) -> None:
        if refresh_token:
            await db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.token_hash == AuthService.hash_token(refresh_token),
                    RefreshToken.revoked_at.is_(None),
                )
                .values(revoked_at=utcnow())
            )
        else:
            await AuthService._revoke_all(user_id, db)
        await db.commit()

    @staticmethod
    async def change_password(user_id: str, data: ChangePasswordRequest, db: AsyncSession) -> None:
        user = await db.get(User, user_id)
        if not user:
            raise NotFoundError("Usuario no encontrado")
        if not AuthService.verify_password(data.current_password, user.password_hash):
            raise BadRequestError("La contraseña actual es incorrecta")

        user.password_hash = AuthService.hash_password(data.new_password)
        await AuthService._revoke_all(user.id, db)
        await db.commit()

    @staticmethod
    async def request_password_reset(email: str, db: AsyncSession) -> Optional[str]:
        """Returns the raw token for the caller to email; None when there is nobody to reset."""
        user = await AuthService.get_user_by_email(email, db)
        if not user or not user.active:
            return None

        token = secrets.token_hex(32)
        db.add(PasswordResetToken(
            user_id=user.id,
            token_hash=AuthService.hash_token(token),
            expires_at=utcnow() + timedelta(minutes=PASSWORD_RESET_EXPIRE_MINUTES),
        ))
        await db.commit()
        return token

    @staticmethod
    async def reset_password(data: ResetPasswordRequest, db: AsyncSession) -> None:
        result = await db.execute(
            select(PasswordResetToken).where(
                PasswordResetToken.token_hash == AuthService.hash_token(data.token),
                PasswordResetToken.used_at.is_(None),
                PasswordResetToken.expires_at > utcnow(),
            )
        )
        reset = result.scalar_one_or_none()
        if not reset:
            raise BadRequestError("Token inválido o expirado")

        user = await db.get(User, reset.user_id)
        if not user:
            raise BadRequestError("Token inválido o expirado")

        user.password_hash = AuthService.hash_password(data.new_password)
        reset.used_at = utcnow()
        await AuthService._revoke_all(user.id, db)
        await db.commit()

    @staticmethod
    async def get_memberships(user_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
        stmt = (
            select(UserOrg, Organization)
            .join(Organization, Organization.id == UserOrg.organization_id)
            .where(UserOrg.user_id == user_id, Organization.active.is_(True))
            .order_by(Organization.name)
        )
        rows = (await db.execute(stmt)).all()
        return [
            {
                "organizationId": org.id,
                "name": org.name,
                "cuit": org.cuit,
                "role": membership.role.value,
            }
            for membership, org in rows
        ]

    @staticmethod
    async def accept_invitation(
        data: AcceptInvitationRequest, db: AsyncSession, request: Optional[Request] = None
    ) -> TokenResponse:
        from services.audit import AuditService, AuditActions, RequestMeta

        result = await db.execute(select(Invitation).where(Invitation.token == data.token))
        invitation = result.scalar_one_or_none()
        if not invitation:
            raise NotFoundError("Invitación no encontrada")
        if invitation.status != InvitationStatus.PENDING:
            raise BadRequestError("La invitación ya fue procesada")
        if invitation.expires_at < utcnow():
            invitation.status = InvitationStatus.EXPIRED
            await db.commit()
            raise BadRequestError("La invitación ha expirado")

        user = await AuthService.get_user_by_email(invitation.email, db)
        if not user:
            if not data.full_name or not data.password:
                raise BadRequestError("Se requiere nombre completo y contraseña para usuarios nuevos")
            user = User(
                email=invitation.email.lower(),
                full_name=data.full_name.strip(),
                password_hash=AuthService.hash_password(data.password),
                active=True,
            )
            db.add(user)
            await db.flush()
        elif not user.active:
            raise UnauthorizedError("Usuario inactivo")

        existing = await db.execute(
            select(UserOrg).where(
                UserOrg.user_id == user.id,
                UserOrg.organization_id == invitation.organization_id,
            )
        )
        if existing.scalar_one_or_none():
            raise ConflictError("Ya eres miembro de esta organización")

        db.add(UserOrg(user_id=user.id, organization_id=invitation.organization_id, role=invitation.role))
        invitation.status = InvitationStatus.ACCEPTED
        AuditService(db).log(
            invitation.organization_id,
            AuditActions.USER_JOINED,
            "User",
            user.id,
            user.id,
            {"role": invitation.role.value, "email": user.email},
            RequestMeta.from_request(request),
        )
        tokens = AuthService.issue_tokens(user, db, request)
        await db.commit()
        return tokens


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    if credentials is None:
        raise UnauthorizedError("No autenticado")

    payload = AuthService.verify_token(credentials.credentials)
    if payload.get("type") != "access":
        raise UnauthorizedError("Tipo de token inválido")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token inválido")

    user = await db.get(User, user_id)
    if not user or not user.active:
        raise UnauthorizedError("Usuario no encontrado o inactivo")

    return CurrentUser(id=user.id, email=user.email, full_name=user.full_name, active=user.active)


def require_org_role(*roles: Role):
    """Dependency factory: caller must be a member of the path organisation,
    holding one of `roles` when any are given."""
    async def _check(
        organization_id: str,
        user: CurrentUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db_session),
    ) -> OrgContext:
        stmt = (
            select(UserOrg.role)
            .join(Organization, Organization.id == UserOrg.organization_id)
            .where(
                UserOrg.user_id == user.id,
                UserOrg.organization_id == organization_id,
                Organization.active.is_(True),
            )
        )
        role = (await db.execute(stmt)).scalar_one_or_none()
        if role is None:
            raise ForbiddenError("No tienes acceso a esta organización")
        role = Role(role)
        if roles and role not in roles:
            raise ForbiddenError("No tienes permisos suficientes para esta acción")
        return OrgContext(user=user, organization_id=organization_id, role=role)
    return _check


require_org_member = require_org_role()


def _platform_admin_emails() -> List[str]:
    raw = os.getenv("PLATFORM_ADMIN_EMAILS", "")
    return [e.strip().lower() for e in raw.split(",") if e.strip()]


def is_platform_admin(user: Optional[CurrentUser], admin_token: Optional[str]) -> bool:
    expected = os.getenv("PLATFORM_ADMIN_TOKEN", "")
    if expected and admin_token and secrets.compare_digest(admin_token, expected):
        return True
    return bool(user and user.email.lower() in _platform_admin_emails())


async def require_platform_admin(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> Optional[CurrentUser]:
    """Platform-level writes (jurisdictions, template catalog)."""
    if is_platform_admin(None, x_admin_token):
        return None
    user = await get_current_user(credentials, db)
    if not is_platform_admin(user, None):
        raise ForbiddenError("Se requieren permisos de administrador de plataforma")
    return user
