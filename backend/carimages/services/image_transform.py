"""图片处理（Pillow）：规范编码、缩放、品牌页脚合成

对核心逻辑来说都是纯函数：相同输入得到相同输出，不持有状态。
CPU 密集，调用方统一放到线程池里执行。
"""

from __future__ import annotations

import enum
import io
import logging
from pathlib import Path

from PIL import Image

from ..utils.errors import InvalidIdentifierError

logger = logging.getLogger(__name__)

JPEG_QUALITY = 85


class Brand(str, enum.Enum):
    """已知的品牌变体（封闭集合）"""

    BRAND = "BRAND"
    BRANDDSG = "BRANDDSG"
    BRANDAPPROVED = "BRANDAPPROVED"
    BRANDBOR = "BRANDBOR"

    @classmethod
    def parse(cls, value: object) -> "Brand":
        raw = str(value or "").strip()
        try:
            return cls(raw)
        except ValueError:
            raise InvalidIdentifierError("Invalid brandId set") from None


class BrandRegistry:
    """品牌 -> 页脚素材字节；启动时一次性加载。

    素材文件缺失时该品牌映射为 None，调用方跳过品牌合成（返回未加工的图）。
    """

    def __init__(self, assets: dict[Brand, bytes | None]):
        self._assets = dict(assets)

    @classmethod
    def from_file(cls, path: Path) -> "BrandRegistry":
        data: bytes | None = None
        try:
            data = Path(path).read_bytes()
        except OSError:
            logger.warning("[BRAND] asset not found: %s (branding disabled)", path)
        return cls({brand: data for brand in Brand})

    def asset(self, brand: Brand) -> bytes | None:
        return self._assets.get(brand)


class ImageTransformer:
    def _to_jpeg(self, img: Image.Image) -> bytes:
        if img.mode != "RGB":
            img = img.convert("RGB")
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=JPEG_QUALITY, progressive=True, optimize=False)
        return out.getvalue()

    def encode(self, data: bytes, target_width: int | None = None) -> bytes:
        """规范编码：JPEG(q=85, progressive)；给定宽度时按比例缩放。"""
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if target_width and target_width > 0 and img.width != target_width:
                ratio = target_width / float(img.width)
                height = max(1, int(round(img.height * ratio)))
                img = img.resize((int(target_width), height), Image.Resampling.LANCZOS)
            return self._to_jpeg(img)

    def composite_brand(self, data: bytes, brand_asset: bytes) -> bytes:
        """把页脚素材缩放到图片宽度后贴在底部。"""
        with Image.open(io.BytesIO(data)) as base_src, Image.open(io.BytesIO(brand_asset)) as footer_src:
            base = base_src.convert("RGB")
            footer = footer_src.convert("RGBA")
            if footer.width != base.width:
                ratio = base.width / float(footer.width)
                height = max(1, int(round(footer.height * ratio)))
                footer = footer.resize((base.width, height), Image.Resampling.LANCZOS)
            top = max(0, base.height - footer.height)
            base.paste(footer, (0, top), footer)
            return self._to_jpeg(base)
