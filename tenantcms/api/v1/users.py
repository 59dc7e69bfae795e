"""Users — managed inside the tenant's own database, restricted to admins."""

import csv
import io
import uuid

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse
from sqlmodel import select

from tenantcms.api.deps import Auth, TenantDB, enforce_limit, require_feature
from tenantcms.core.cache import usage_cache
from tenantcms.models.base import utcnow
from tenantcms.models.user import User, UserCreate, UserRead, UserRole, UserStatus
from tenantcms.services.accounts import create_user as create_account

router = APIRouter(prefix="/users", tags=["users"])


def _require_elevated(auth_role: str) -> None:
    """Raise 403 if the caller is not a super admin or admin."""
    if auth_role not in (UserRole.SUPER_ADMIN, UserRole.ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can manage users",
        )


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[enforce_limit("users")],
)
async def create_user(body: UserCreate, auth: Auth, session: TenantDB) -> UserRead:
    _require_elevated(auth.user_role)
    if body.role == UserRole.SUPER_ADMIN and auth.user_role != UserRole.SUPER_ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only a super admin can grant the super admin role",
        )

    result = await session.execute(select(User).where(User.email == body.email.lower()))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A user with this email already exists",
        )

    user = await create_account(
        session,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
    )
    usage_cache.invalidate_prefix(auth.tenant_id)
    return UserRead.model_validate(user)


@router.get("", response_model=list[UserRead])
async def list_users(auth: Auth, session: TenantDB) -> list[UserRead]:
    stmt = select(User).order_by(User.email.asc())  # type: ignore[union-attr]
    result = await session.execute(stmt)
    return [UserRead.model_validate(u) for u in result.scalars().all()]


@router.get("/export", dependencies=[require_feature("analytics")])
async def export_users(auth: Auth, session: TenantDB) -> StreamingResponse:
    """CSV export of the tenant's users. Requires the analytics feature."""
    _require_elevated(auth.user_role)
    result = await session.execute(select(User).order_by(User.created_at.asc()))  # type: ignore[union-attr]

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["id", "email", "first_name", "last_name", "role", "status", "last_login", "created_at"])
    for user in result.scalars().all():
        writer.writerow([
            str(user.id), user.email, user.first_name, user.last_name, user.role, user.status,
            user.last_login.isoformat() if user.last_login else "", user.created_at.isoformat(),
        ])
    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=users_export.csv"},
    )


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_user(user_id: uuid.UUID, auth: Auth, session: TenantDB) -> None:
    _require_elevated(auth.user_role)
    if user_id == auth.user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot deactivate your own account",
        )
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    user.status = UserStatus.INACTIVE
    user.updated_at = utcnow()
    session.add(user)
    await session.commit()
    usage_cache.invalidate_prefix(auth.tenant_id)
