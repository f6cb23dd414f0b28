"""Link / delete API"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..container import Services
from ..schemas import DeleteResponse, LinkResponse
from ..utils.errors import (
    AlreadyExistsError,
    InvalidIdentifierError,
    NotFoundError,
    OriginalProtectedError,
    safe_str,
)
from .deps import get_services, require_basic_auth

router = APIRouter(tags=["links"])
logger = logging.getLogger(__name__)


@router.get("/v1/link/{from_vin}/{to_vin}", response_model=LinkResponse)
async def create_link(from_vin: str, to_vin: str, services: Services = Depends(get_services)):
    """让 to_vin 复用 from_vin 的图片"""
    try:
        record = await services.links.create_link(from_vin, to_vin)
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=safe_str(e)) from e
    except AlreadyExistsError as e:
        raise HTTPException(status_code=409, detail=safe_str(e)) from e
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=safe_str(e)) from e

    return LinkResponse(
        vin=record.vin,
        origin_vin=record.origin_vin() or "",
        images=[f"/{record.vin}/{p}" for p in record.positions()],
    )


@router.delete("/v1/link/{vin}", response_model=DeleteResponse)
async def delete_link(vin: str, services: Services = Depends(get_services)):
    try:
        record = await services.links.delete_link(vin)
    except (InvalidIdentifierError, OriginalProtectedError) as e:
        raise HTTPException(status_code=400, detail=safe_str(e)) from e
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=safe_str(e)) from e
    return DeleteResponse(vin=record.vin, deleted_objects=0)


@router.delete("/v1/original/{vin}", response_model=DeleteResponse)
async def delete_original(
    vin: str,
    services: Services = Depends(get_services),
    user: str = Depends(require_basic_auth),
):
    """删除原图（需要 HTTP Basic）"""
    try:
        result = await services.links.delete_original(vin)
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=safe_str(e)) from e
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=safe_str(e)) from e
    logger.info("[API] original %s deleted by %s", result.vin, user)
    return result
