from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import activity
from dependencies import get_db
from filter_helpers import blank_to_none, normalize_limit
from models import ActivityEntry

from .responses import unwrap

router = APIRouter()


@router.get("/activity", response_model=list[ActivityEntry])
def list_activity_api(
    city_id: str,
    action: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    rows = unwrap(activity.list_activity(db, city_id, action=blank_to_none(action), limit=normalize_limit(limit)))
    return [
        ActivityEntry(
            id=a.id,
            city_id=a.city_id,
            manager_name=a.manager_name,
            action=a.action,
            details=a.details,
            created_at=a.created_at,
        )
        for a in rows
    ]
