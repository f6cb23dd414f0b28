"""容器健康检查：请求本机根路径，200 则退出码 0，否则 1"""

from __future__ import annotations

import os

import httpx


def main() -> int:
    port = os.environ.get("BACKEND_PORT") or os.environ.get("SERVER_PORT") or "3333"
    try:
        resp = httpx.get(f"http://localhost:{port}/", timeout=5.0)
    except httpx.HTTPError:
        return 1
    return 0 if resp.status_code == 200 else 1


if __name__ == "__main__":
    raise SystemExit(main())
