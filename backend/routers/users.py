# routers/users.py — Current user profile
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, get_current_user, CurrentUser
from database import get_db_session
from errors import NotFoundError
from models import User
from pagination import APIModel, ok

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserOut(APIModel):
    id: str
    email: str
    full_name: str
    active: bool
    created_at: Optional[datetime] = None


class UserProfileUpdate(APIModel):
    full_name: str = Field(..., min_length=2, max_length=255)


# --- Endpoints ---

@router.get("/me")
async def get_me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    record = await db.get(User, user.id)
    profile = UserOut.model_validate(record).model_dump(mode="json", by_alias=True)
    profile["organizations"] = await AuthService.get_memberships(user.id, db)
    return ok(profile)


@router.patch("/me")
async def update_me(
    data: UserProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    record = await db.get(User, user.id)
    if not record:
        raise NotFoundError("Usuario no encontrado")
    record.full_name = data.full_name.strip()
    await db.commit()
    await db.refresh(record)
    return ok(UserOut.model_validate(record))
