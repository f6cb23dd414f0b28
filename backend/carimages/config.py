from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_APP_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _APP_DIR.parent
_REPO_ROOT = _BACKEND_DIR.parent


def _load_root_dotenv() -> None:
    """
    统一从仓库根目录读取 `.env`（并保证其优先级最高）。

    说明：
    - 启动脚本通常会 `cd backend`，导致默认只会找子目录下的 `.env`。
    - 这里显式加载：先加载 `backend/.env`，再加载根目录 `.env`，并且 `override=True`。
    """

    backend_env = _BACKEND_DIR / ".env"
    root_env = _REPO_ROOT / ".env"

    for env_file in (backend_env, root_env):
        if env_file.exists():
            load_dotenv(env_file, override=True, encoding="utf-8")


def _resolve_repo_path(raw: str) -> Path:
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = (_REPO_ROOT / p).resolve()
    return p


class Settings(BaseSettings):
    """Application settings"""

    # Server（供 run.py 使用）
    backend_host: str = "0.0.0.0"
    backend_port: int = 3333
    backend_reload: bool = False

    # 规范库（VehicleRecord / 共享缓存表）
    # 优先使用 DATABASE_URL；不配置时再使用 SQLITE_DB_PATH 生成 sqlite URL
    database_url: str | None = None
    sqlite_db_path: str = "carimages.db"

    # 旧库（只读迁移来源）；不配置则整个 legacy 层被跳过
    legacy_database_url: str | None = None

    api_prefix: str = "/images"
    debug: bool = False
    sql_echo: bool = False

    cors_allow_origins: str = "*"

    # Cache
    # - 本地层只做短时缓冲，不作为权威数据；共享层按 TTL 绝对过期
    cache_shared_enabled: bool = True
    cache_local_ttl_seconds: float = 10.0
    cache_image_ttl_seconds: int = 30 * 60
    cache_status_ttl_seconds: int = 5 * 60
    cache_changes_ttl_seconds: int = 60
    cache_timeout_seconds: float = 1.0

    # 每一次存储层调用的超时；超时视为该层“不可用”，继续走下一层
    store_timeout_seconds: float = 5.0

    # Object storage：filesystem | s3
    object_storage_backend: str = "filesystem"
    object_storage_dir: str = "storage"
    s3_endpoint_url: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_bucket: str = "car-images"
    s3_prefix: str = ""

    # 本地兜底目录：<dir>/<vin>/<vin>_<position>.<ext>
    local_fallback_dir: str = "own"

    # 品牌页脚素材
    brand_assets_dir: str = "assets"
    brand_asset_file: str = "Header_Petrol.png"

    # 删除原图需要 HTTP Basic 认证
    auth_user: str | None = None
    auth_password: str | None = None

    # Migration
    migration_batch_size: int = 50
    migration_workers: int = 1
    # 0 表示不启用定时迁移
    migration_interval_minutes: int = 0
    migrate_on_startup: bool = False

    @model_validator(mode="after")
    def _build_database_url_if_missing(self) -> "Settings":
        if self.database_url and self.database_url.strip():
            return self

        db_path = _resolve_repo_path(self.sqlite_db_path)
        self.database_url = f"sqlite+aiosqlite:///{db_path.as_posix()}"
        return self

    @model_validator(mode="after")
    def _normalize_migration(self) -> "Settings":
        if int(self.migration_batch_size or 0) <= 0:
            self.migration_batch_size = 50
        workers = int(self.migration_workers or 0)
        self.migration_workers = max(1, min(workers, 16))
        if int(self.migration_interval_minutes or 0) < 0:
            self.migration_interval_minutes = 0

        backend = (self.object_storage_backend or "filesystem").strip().lower()
        if backend not in {"filesystem", "s3"}:
            raise ValueError(f"OBJECT_STORAGE_BACKEND 只支持 filesystem / s3，当前为：{backend}")
        self.object_storage_backend = backend

        legacy = (self.legacy_database_url or "").strip()
        self.legacy_database_url = legacy or None
        return self

    def object_storage_path(self) -> Path:
        return _resolve_repo_path(self.object_storage_dir)

    def local_fallback_path(self) -> Path:
        return _resolve_repo_path(self.local_fallback_dir)

    def brand_asset_path(self) -> Path:
        return _resolve_repo_path(self.brand_assets_dir) / self.brand_asset_file

    model_config = SettingsConfigDict(
        case_sensitive=False
    )


_load_root_dotenv()
settings = Settings()
