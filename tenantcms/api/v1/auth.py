"""Authentication endpoints: tenant login and current user."""

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, EmailStr
from sqlmodel import select

from tenantcms.api.deps import Auth, CurrentTenant, TenantDB
from tenantcms.core.security import create_jwt, verify_password
from tenantcms.models.base import utcnow
from tenantcms.models.user import User, UserRead
from tenantcms.services.resolver import TenantContext

router = APIRouter(prefix="/auth", tags=["auth"])


# ── Schemas ──────────────────────────────────────────────────

class SiteInfo(BaseModel):
    id: str
    name: str
    domain: str
    plan: str

    @classmethod
    def from_context(cls, tenant: TenantContext) -> "SiteInfo":
        return cls(id=str(tenant.tenant_id), name=tenant.name, domain=tenant.domain, plan=tenant.plan)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead
    site: SiteInfo


class MeResponse(BaseModel):
    user: UserRead
    site: SiteInfo


# ── Routes ───────────────────────────────────────────────────

@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, tenant: CurrentTenant, session: TenantDB) -> LoginResponse:
    """Authenticate against the resolved tenant's own users, receive a JWT."""
    stmt = select(User).where(User.email == body.email.lower())
    result = await session.execute(stmt)
    user = result.scalar_one_or_none()

    if user is None or not verify_password(body.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled",
        )

    user.last_login = utcnow()
    user.login_count += 1
    session.add(user)
    await session.commit()
    await session.refresh(user)

    token = create_jwt(
        subject=str(user.id),
        tenant_id=str(tenant.tenant_id),
        role=user.role,
    )

    return LoginResponse(
        access_token=token,
        user=UserRead.model_validate(user),
        site=SiteInfo.from_context(tenant),
    )


@router.get("/me", response_model=MeResponse)
async def get_me(auth: Auth, tenant: CurrentTenant, session: TenantDB) -> MeResponse:
    """Return the current authenticated user and their site."""
    user = await session.get(User, auth.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    return MeResponse(
        user=UserRead.model_validate(user),
        site=SiteInfo.from_context(tenant),
    )
