"""FastAPI application entry point"""
import asyncio
import logging
import uuid
from pathlib import Path
import tomllib

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import (
    http_exception_handler as fastapi_http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import settings
from .container import build_services
from .database import init_db
from .api import images_router, links_router
from .scheduler import MigrationScheduler
from .utils.errors import exception_summary

logger = logging.getLogger(__name__)

# 默认降低 SQLAlchemy 的日志噪声；排查 SQL 时再用 SQL_ECHO=true 打开
if not settings.sql_echo:
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)


def _read_app_version() -> str:
    """尽量从仓库根目录的 pyproject.toml 读取版本，避免多处硬编码导致不一致。"""
    try:
        repo_root = Path(__file__).resolve().parents[2]
        pyproject = repo_root / "pyproject.toml"
        if not pyproject.exists():
            return "0.1.0"
        data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
        version = ((data.get("project") or {}).get("version") or "").strip()
        return version or "0.1.0"
    except Exception:
        return "0.1.0"


APP_VERSION = _read_app_version()

app = FastAPI(
    title="Car Images API",
    description="Vehicle image resolution with legacy store migration",
    version=APP_VERSION,
)


def _split_csv(value: str) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


cors_origins = _split_csv(settings.cors_allow_origins)
if not cors_origins or cors_origins == ["*"]:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _normalize_request_id(value: str | None) -> str | None:
    """对外部传入的 request id 做一次简单归一化，避免日志注入/过长字符串。"""
    if not value or not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    if len(s) > 64:
        return None
    if any(ord(ch) < 32 for ch in s):
        return None
    return s


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """为每个请求生成/透传 X-Request-Id，并写入响应头。"""
    incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
    rid = _normalize_request_id(incoming) or uuid.uuid4().hex
    request.state.request_id = rid

    response = await call_next(request)
    response.headers["X-Request-Id"] = rid
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler_with_request_id(request: Request, exc: HTTPException):
    response = await fastapi_http_exception_handler(request, exc)
    rid = getattr(getattr(request, "state", None), "request_id", None)
    if rid:
        response.headers["X-Request-Id"] = rid
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler_with_request_id(request: Request, exc: RequestValidationError):
    response = await request_validation_exception_handler(request, exc)
    rid = getattr(getattr(request, "state", None), "request_id", None)
    if rid:
        response.headers["X-Request-Id"] = rid
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = getattr(getattr(request, "state", None), "request_id", None)
    logger.exception("[UNHANDLED] request_id=%s", rid or "-")

    # 对外默认不泄露内部异常细节；debug 时给一个可读摘要便于定位
    detail = "INTERNAL_ERROR"
    if settings.debug:
        detail = exception_summary(exc, max_len=200)

    payload: dict[str, object] = {"detail": detail}
    if rid:
        payload["request_id"] = rid

    headers = {"X-Request-Id": rid} if rid else None
    return JSONResponse(payload, status_code=500, headers=headers)


# Register API routers
app.include_router(images_router, prefix=settings.api_prefix)
app.include_router(links_router, prefix=settings.api_prefix)


@app.on_event("startup")
async def startup_event():
    """Build services, initialize database and start scheduler on startup"""
    # 测试会预先塞入 services；此时由测试负责关闭
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
        app.state.owns_services = True
    services = app.state.services
    await init_db(services.engine)

    scheduler = MigrationScheduler(services)
    app.state.scheduler = scheduler

    def _log_task_result(task: asyncio.Task) -> None:
        try:
            task.result()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("[STARTUP] Initial migration task failed")

    # 启动时触发一次完整迁移（后台运行，不阻塞启动）
    if settings.migrate_on_startup and services.migration is not None:
        logger.info("[STARTUP] Scheduling initial migration on startup...")
        task = asyncio.create_task(scheduler.run_migration())
        task.add_done_callback(_log_task_result)

    scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop scheduler and close services on shutdown"""
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown()
    if getattr(app.state, "owns_services", False):
        await app.state.services.aclose()
        app.state.services = None
        app.state.owns_services = False


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "Car Images API", "version": APP_VERSION}


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint（包含 DB 可用性探测）。"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="SERVICE_NOT_READY")
    try:
        async with services.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("[HEALTH] Database check failed: %s", exception_summary(e))
        raise HTTPException(status_code=503, detail="DB_UNAVAILABLE") from e

    return {"status": "healthy", "db": "ok"}
