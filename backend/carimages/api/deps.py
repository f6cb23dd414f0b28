"""API 依赖：从 app.state 取装配好的服务 + 删除原图的 HTTP Basic 认证"""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from ..container import Services

logger = logging.getLogger(__name__)

_basic = HTTPBasic(auto_error=False)


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="SERVICE_NOT_READY")
    return services


def require_basic_auth(
    credentials: HTTPBasicCredentials | None = Depends(_basic),
    services: Services = Depends(get_services),
) -> str:
    """校验 HTTP Basic；未配置 AUTH_USER / AUTH_PASSWORD 时一律拒绝。"""
    challenge = {"WWW-Authenticate": "Basic"}
    expected_user = (services.settings.auth_user or "").strip()
    expected_password = services.settings.auth_password or ""
    if not expected_user or not expected_password:
        logger.warning("[AUTH] AUTH_USER / AUTH_PASSWORD not configured, rejecting protected request")
        raise HTTPException(status_code=401, detail="Unauthorized", headers=challenge)
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized", headers=challenge)

    # 常量时间比较
    user_ok = hmac.compare_digest(credentials.username.encode("utf-8"), expected_user.encode("utf-8"))
    password_ok = hmac.compare_digest(credentials.password.encode("utf-8"), expected_password.encode("utf-8"))
    if not (user_ok and password_ok):
        raise HTTPException(status_code=401, detail="Unauthorized", headers=challenge)
    return credentials.username
