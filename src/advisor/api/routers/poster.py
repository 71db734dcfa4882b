from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ...domain.errors import AdvisorError, ConfigError
from ...domain.models import PosterHistoryResponse, PosterRequest
from ...infrastructure.user_store import get_user_store
from ...security.auth import AuthUser, get_current_user, get_optional_user
from ...services.generation import get_poster_workflow
from ..errors import to_http_exception


router = APIRouter(tags=["poster"])


@router.post("/generate-poster")
def generate_poster(req: PosterRequest, user: Optional[AuthUser] = Depends(get_optional_user)):
    if not req.area or not req.area.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="请输入地区信息")
    try:
        workflow = get_poster_workflow()
    except ConfigError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"服务配置错误：{exc}")
    try:
        result = workflow.run(
            req.area,
            season=req.season,
            user_id=user.id if user else None,
            email=user.email if user else None,
            nick=user.nick if user else None,
        )
    except AdvisorError as exc:
        raise to_http_exception(exc)
    if result.image_url is None:
        return {"imageUrl": None, "text": result.text}
    return {"imageUrl": result.image_url}


@router.get("/user/posters", response_model=PosterHistoryResponse, response_model_by_alias=True)
def poster_history(user: AuthUser = Depends(get_current_user)) -> PosterHistoryResponse:
    return PosterHistoryResponse(history=get_user_store().poster_history(user.id))
