"""本地目录兜底：`<root>/<vin>/<vin>_<position>.<ext>`

这些文件没有时间戳等元数据，只作为最后一层兜底，结果不当作权威数据缓存。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from starlette.concurrency import run_in_threadpool


@dataclass(frozen=True)
class LocalImage:
    vin: str
    position: int
    path: Path


class LocalFallbackStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    def _scan(self, vin: str) -> list[LocalImage]:
        folder = self.root / vin
        if not folder.is_dir():
            return []
        pattern = re.compile(rf"^{re.escape(vin)}_(\d{{1,2}})\.\w+$")
        found: dict[int, LocalImage] = {}
        for p in sorted(folder.iterdir()):
            if not p.is_file():
                continue
            m = pattern.match(p.name)
            if not m:
                continue
            position = int(m.group(1))
            if position <= 0:
                continue
            # 同一位置多种扩展名时取排序后的第一个
            found.setdefault(position, LocalImage(vin=vin, position=position, path=p))
        return [found[k] for k in sorted(found)]

    async def list_images(self, vin: str) -> list[LocalImage]:
        return await run_in_threadpool(self._scan, vin)

    async def read(self, vin: str, position: int) -> bytes | None:
        def _read() -> bytes | None:
            for image in self._scan(vin):
                if image.position == position:
                    return image.path.read_bytes()
            return None

        return await run_in_threadpool(_read)
