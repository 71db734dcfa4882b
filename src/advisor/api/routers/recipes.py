from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Query

from ...domain.models import Recipe
from ...services.recipes import list_recipes


router = APIRouter(tags=["recipes"])


@router.get("/recipes", response_model=List[Recipe])
def get_recipes(
    season: Optional[str] = Query(None, description="季节, e.g. 春季"),
    tizhi: Optional[str] = Query(None, description="体质, e.g. 气虚质"),
) -> List[Recipe]:
    return list_recipes(season=season, tizhi=tizhi)
