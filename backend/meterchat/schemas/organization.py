from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class OrgResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: Optional[str] = None
    plan: Optional[str] = None
    credits_balance: int = 0
    created_at: Optional[datetime] = None
