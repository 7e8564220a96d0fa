from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...deps import get_current_user
from ...models.organization import Organization
from ...models.user import User
from ...platform.database import get_async_db
from ...schemas.organization import OrgResponse

router = APIRouter(prefix="/organizations", tags=["Organizations"])


@router.get("/me", response_model=OrgResponse)
async def get_my_organization(
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    if current_user.organization_id is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    org = (
        await db.execute(select(Organization).where(Organization.id == current_user.organization_id))
    ).scalar_one_or_none()
    if not org:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org
