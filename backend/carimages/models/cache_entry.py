from sqlalchemy import Column, DateTime, LargeBinary, String

from ..database import Base


class CacheEntryRow(Base):
    """共享缓存表（多实例共享的那一层）。

    - key 形如 `status:<vin>` / `img:<vin>:<pos>:<shrink>:<brand>` / `changes:<seconds>`
    - value 存原始字节：SQLite=BLOB；PostgreSQL=BYTEA
    - expires_at 为绝对过期时间；读取时过滤，不做淘汰算法
    """

    __tablename__ = "cache_entries"

    key = Column(String(255), primary_key=True)
    value = Column(LargeBinary, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
