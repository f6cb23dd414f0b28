"""规范对象存储：按路径寻址的 blob put/get/delete

key 约定为 `<vin>/<position>.<ext>`；两种实现：
- FileSystemObjectStorage：本地目录（开发 / 单机部署）
- S3ObjectStorage：S3 / MinIO（path-style）

阻塞 IO（文件系统、boto3）统一丢到线程池，避免卡住事件循环。
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


def canonical_key(vin: str, position: int, ext: str = "jpg") -> str:
    return f"{vin}/{position}.{ext}"


def _clean_key(key: str) -> str:
    """拒绝绝对路径 / `..`，避免越出存储根目录。"""
    raw = str(key or "").strip().lstrip("/")
    parts = PurePosixPath(raw).parts
    if not parts or any(p in ("..", ".") for p in parts):
        raise ValueError(f"invalid object key: {key!r}")
    return "/".join(parts)


class ObjectStorage:
    async def get(self, key: str) -> bytes | None:
        raise NotImplementedError

    async def put(self, key: str, data: bytes, *, content_type: str = "image/jpeg") -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def list_prefix(self, prefix: str) -> list[str]:
        raise NotImplementedError

    async def delete_prefix(self, prefix: str) -> int:
        keys = await self.list_prefix(prefix)
        removed = 0
        for key in keys:
            if await self.delete(key):
                removed += 1
        return removed

    async def aclose(self) -> None:
        return None


class FileSystemObjectStorage(ObjectStorage):
    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / _clean_key(key)

    async def get(self, key: str) -> bytes | None:
        path = self._path(key)

        def _read() -> bytes | None:
            if not path.is_file():
                return None
            return path.read_bytes()

        return await run_in_threadpool(_read)

    async def put(self, key: str, data: bytes, *, content_type: str = "image/jpeg") -> None:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            # 先写临时文件再替换，避免读到半截文件
            tmp = path.with_name(f".{path.name}.tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

        await run_in_threadpool(_write)

    async def delete(self, key: str) -> bool:
        path = self._path(key)

        def _unlink() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        return await run_in_threadpool(_unlink)

    async def list_prefix(self, prefix: str) -> list[str]:
        base = self._path(prefix.rstrip("/"))

        def _walk() -> list[str]:
            if not base.is_dir():
                return []
            return sorted(
                p.relative_to(self.root).as_posix()
                for p in base.rglob("*")
                if p.is_file() and not p.name.startswith(".")
            )

        return await run_in_threadpool(_walk)


class S3ObjectStorage(ObjectStorage):
    """S3 / MinIO 实现；client 可注入（便于测试），否则按配置创建。"""

    def __init__(
        self,
        *,
        bucket: str,
        prefix: str = "",
        client: Any | None = None,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        access_key: str | None = None,
        secret_key: str | None = None,
    ):
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                region_name=region,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                # MinIO 需要 path-style
                config=Config(s3={"addressing_style": "path"}),
            )
        self._client = client
        self.bucket = bucket
        self.prefix = (prefix or "").strip("/")

    def _full_key(self, key: str) -> str:
        clean = _clean_key(key)
        if self.prefix and not clean.startswith(f"{self.prefix}/"):
            return f"{self.prefix}/{clean}"
        return clean

    def _relative_key(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(f"{self.prefix}/"):
            return full_key[len(self.prefix) + 1 :]
        return full_key

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        response = getattr(exc, "response", None)
        if not isinstance(response, dict):
            return False
        code = str((response.get("Error") or {}).get("Code") or "")
        return code in {"NoSuchKey", "404", "NotFound"}

    async def get(self, key: str) -> bytes | None:
        full_key = self._full_key(key)

        def _get() -> bytes | None:
            try:
                resp = self._client.get_object(Bucket=self.bucket, Key=full_key)
            except ClientError as e:
                if self._is_missing(e):
                    return None
                raise
            body = resp["Body"]
            try:
                return body.read()
            finally:
                body.close()

        return await run_in_threadpool(_get)

    async def put(self, key: str, data: bytes, *, content_type: str = "image/jpeg") -> None:
        full_key = self._full_key(key)
        await run_in_threadpool(
            self._client.put_object,
            Bucket=self.bucket,
            Key=full_key,
            Body=data,
            ContentType=content_type,
        )

    async def delete(self, key: str) -> bool:
        full_key = self._full_key(key)
        await run_in_threadpool(self._client.delete_object, Bucket=self.bucket, Key=full_key)
        return True

    async def list_prefix(self, prefix: str) -> list[str]:
        full_prefix = self._full_key(prefix.rstrip("/")) + "/"

        def _list() -> list[str]:
            keys: list[str] = []
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
                for obj in page.get("Contents") or []:
                    keys.append(self._relative_key(str(obj["Key"])))
            return sorted(keys)

        return await run_in_threadpool(_list)
