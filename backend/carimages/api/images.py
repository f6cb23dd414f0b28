"""Image / status API"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from ..container import Services
from ..schemas import ChangesResponse, ResolvedImage, StatusResponse
from ..services import Brand
from ..utils.errors import InvalidIdentifierError, UpstreamUnavailableError, safe_str
from .deps import get_services

router = APIRouter(tags=["images"])
logger = logging.getLogger(__name__)


def _image_response(image: ResolvedImage | None) -> Response:
    if image is None:
        return Response(status_code=404)
    return Response(
        content=image.data,
        media_type="image/jpeg",
        headers={"X-Source": image.provenance.value},
    )


def _strip_ext(position: str) -> str:
    # v2 路由允许 `/3.jpg` 这种写法
    raw = str(position or "").strip()
    if raw.lower().endswith(".jpg"):
        return raw[: -len(".jpg")]
    return raw


async def _resolve(
    services: Services,
    vin: str,
    position: str,
    *,
    shrink: str | None,
    brand: Brand | str | None,
) -> Response:
    try:
        image = await services.chain.resolve_image(vin, position, shrink=shrink, brand=brand)
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=safe_str(e)) from e
    return _image_response(image)


@router.get("/v1/status/changedsince/{seconds}", response_model=ChangesResponse)
async def changed_since(seconds: str, services: Services = Depends(get_services)):
    """最近 N 秒内创建或更新过的 VIN"""
    try:
        return await services.chain.changed_since(seconds)
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=safe_str(e)) from e
    except UpstreamUnavailableError as e:
        logger.warning("[API] changedsince unavailable: %s", e)
        raise HTTPException(status_code=503, detail="STORE_UNAVAILABLE") from e


@router.get("/v1/status/{vin}", response_model=StatusResponse)
async def get_status(vin: str, services: Services = Depends(get_services)):
    """VIN 状态（有哪些位置的图片、是否链接、时间戳）"""
    try:
        return await services.chain.resolve_status(vin)
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=safe_str(e)) from e


@router.get("/v1/raw/{vin}/{position}")
async def get_raw_image(
    vin: str,
    position: str,
    shrink: str | None = Query(default=None),
    services: Services = Depends(get_services),
):
    return await _resolve(services, vin, position, shrink=shrink, brand=None)


@router.get("/v1/brand/{vin}/{position}")
async def get_branded_image(
    vin: str,
    position: str,
    shrink: str | None = Query(default=None),
    services: Services = Depends(get_services),
):
    """默认品牌（BRAND）页脚，仅 1 号位生效"""
    return await _resolve(services, vin, position, shrink=shrink, brand=Brand.BRAND)


@router.get("/v2/brand/{brand}/{vin}/{position}")
async def get_branded_image_v2(
    brand: str,
    vin: str,
    position: str,
    shrink: str | None = Query(default=None),
    services: Services = Depends(get_services),
):
    return await _resolve(services, vin, _strip_ext(position), shrink=shrink, brand=brand)
