"""Scheduler for periodic legacy migration"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .container import Services

logger = logging.getLogger(__name__)

CACHE_PURGE_INTERVAL_MINUTES = 30


class MigrationScheduler:
    """定时迁移 + 过期缓存清理"""

    def __init__(self, services: Services):
        self.services = services
        # 关键约束：
        # - max_instances=1：避免迁移任务重入（上一次未完成时不并发启动下一次）
        # - coalesce=True：如果发生 misfire，则合并为一次执行（避免堆积）
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )

    async def run_migration(self):
        """完整跑一次迁移（原始记录 -> 链接记录）"""
        engine = self.services.migration
        if engine is None:
            logger.info("[SCHEDULER] Legacy store not configured, skip migration")
            return None

        logger.info("[SCHEDULER] Starting legacy migration...")
        try:
            result = await engine.run(self.services.settings.migration_batch_size)
        except Exception as e:
            logger.exception("[SCHEDULER] Migration error: %s", e)
            return None
        logger.info("[SCHEDULER] Legacy migration completed")
        return result

    async def purge_cache(self):
        shared = self.services.cache.shared
        if shared is None:
            return 0
        try:
            removed = await shared.purge_expired()
        except Exception as e:
            logger.warning("[SCHEDULER] Cache purge failed: %s", e)
            return 0
        if removed:
            logger.info("[SCHEDULER] Purged %s expired cache entries", removed)
        return removed

    def start(self):
        """启动定时任务"""
        if getattr(self.scheduler, "running", False):
            logger.info("[SCHEDULER] Scheduler already running")
            return

        interval_minutes = int(self.services.settings.migration_interval_minutes or 0)
        if interval_minutes > 0 and self.services.migration is not None:
            self.scheduler.add_job(
                self.run_migration,
                trigger=IntervalTrigger(minutes=interval_minutes),
                id='run_migration',
                name=f'Migrate legacy store every {interval_minutes} minutes',
                replace_existing=True
            )

        if self.services.cache.shared is not None:
            self.scheduler.add_job(
                self.purge_cache,
                trigger=IntervalTrigger(minutes=CACHE_PURGE_INTERVAL_MINUTES),
                id='purge_cache',
                name=f'Purge expired cache entries every {CACHE_PURGE_INTERVAL_MINUTES} minutes',
                replace_existing=True
            )

        self.scheduler.start()
        logger.info(
            "[SCHEDULER] Scheduler started: migration every %s minutes (0 = disabled)",
            interval_minutes,
        )

    def shutdown(self):
        """关闭定时任务"""
        if not getattr(self.scheduler, "running", False):
            return
        self.scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Scheduler stopped")
