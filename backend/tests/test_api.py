from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path
from typing_extensions import override

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.carimages.container import Services
from backend.carimages.main import app
from backend.carimages.schemas import ImageEntry, VehicleRecord
from backend.tests.support import MemoryObjectStorage, build_test_services, jpeg_bytes

VIN_A = "WVWZZZ1JZXW000001"
VIN_B = "WVWZZZ1JZXW000002"
PREFIX = "/images"


class ApiTests(unittest.IsolatedAsyncioTestCase):
    services: Services | None = None

    @override
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        services, storage = await build_test_services(Path(self._tmp.name))
        self.services = services
        self.storage: MemoryObjectStorage = storage
        # ASGITransport 不触发 startup：直接注入装配好的服务
        app.state.services = services
        self.client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

    @override
    async def asyncTearDown(self):
        await self.client.aclose()
        app.state.services = None
        if self.services is not None:
            await self.services.aclose()
        self._tmp.cleanup()

    async def _create_origin(self) -> bytes:
        assert self.services is not None
        data = jpeg_bytes()
        await self.storage.put(f"{VIN_A}/1.jpg", data)
        await self.services.vehicle_store.create(
            VehicleRecord(vin=VIN_A, images=[ImageEntry(position=1, locator=f"{VIN_A}/1.jpg")])
        )
        return data

    async def test_root_and_health(self):
        resp = await self.client.get("/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Car Images API")

        resp = await self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "healthy", "db": "ok"})
        self.assertIn("X-Request-Id", resp.headers)

    async def test_status(self):
        await self._create_origin()

        resp = await self.client.get(f"{PREFIX}/v1/status/{VIN_A.lower()}")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertTrue(body["found"])
        self.assertEqual(body["images"], [f"/{VIN_A}/1"])
        self.assertFalse(body["linked"])

        resp = await self.client.get(f"{PREFIX}/v1/status/{VIN_B}")
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["found"])

        resp = await self.client.get(f"{PREFIX}/v1/status/not-a-vin")
        self.assertEqual(resp.status_code, 400)

    async def test_raw_image(self):
        data = await self._create_origin()

        resp = await self.client.get(f"{PREFIX}/v1/raw/{VIN_A}/1")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.headers["content-type"], "image/jpeg")
        self.assertEqual(resp.headers["X-Source"], "canonical")
        self.assertEqual(resp.content, data)

        resp = await self.client.get(f"{PREFIX}/v1/raw/{VIN_A}/1")
        self.assertEqual(resp.headers["X-Source"], "cache")

        resp = await self.client.get(f"{PREFIX}/v1/raw/{VIN_A}/2")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.content, b"")

        resp = await self.client.get(f"{PREFIX}/v1/raw/{VIN_A}/abc")
        self.assertEqual(resp.status_code, 400)
        resp = await self.client.get(f"{PREFIX}/v1/raw/{VIN_A}/1", params={"shrink": "-3"})
        self.assertEqual(resp.status_code, 400)

    async def test_brand_routes(self):
        await self._create_origin()

        resp = await self.client.get(f"{PREFIX}/v1/brand/{VIN_A}/1")
        self.assertEqual(resp.status_code, 200)

        resp = await self.client.get(f"{PREFIX}/v2/brand/BRANDDSG/{VIN_A}/1.jpg")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.headers["content-type"], "image/jpeg")

        resp = await self.client.get(f"{PREFIX}/v2/brand/UNKNOWN/{VIN_A}/1")
        self.assertEqual(resp.status_code, 400)

    async def test_changed_since(self):
        await self._create_origin()

        resp = await self.client.get(f"{PREFIX}/v1/status/changedsince/600")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True, "data": [VIN_A]})

        resp = await self.client.get(f"{PREFIX}/v1/status/changedsince/soon")
        self.assertEqual(resp.status_code, 400)

    async def test_link_lifecycle(self):
        await self._create_origin()

        resp = await self.client.get(f"{PREFIX}/v1/link/{VIN_A}/{VIN_B}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(
            resp.json(),
            {"success": True, "vin": VIN_B, "origin_vin": VIN_A, "images": [f"/{VIN_B}/1"]},
        )

        resp = await self.client.get(f"{PREFIX}/v1/link/{VIN_A}/{VIN_B}")
        self.assertEqual(resp.status_code, 409)

        resp = await self.client.get(f"{PREFIX}/v1/raw/{VIN_B}/1")
        self.assertEqual(resp.status_code, 200)

        resp = await self.client.delete(f"{PREFIX}/v1/link/{VIN_A}")
        self.assertEqual(resp.status_code, 400)

        resp = await self.client.delete(f"{PREFIX}/v1/link/{VIN_B}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["vin"], VIN_B)

        resp = await self.client.delete(f"{PREFIX}/v1/link/{VIN_B}")
        self.assertEqual(resp.status_code, 404)

    async def test_link_from_unknown_vin(self):
        resp = await self.client.get(f"{PREFIX}/v1/link/{VIN_A}/{VIN_B}")
        self.assertEqual(resp.status_code, 404)

    async def test_delete_original_requires_basic_auth(self):
        await self._create_origin()
        url = f"{PREFIX}/v1/original/{VIN_A}"

        resp = await self.client.delete(url)
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.headers.get("WWW-Authenticate"), "Basic")

        resp = await self.client.delete(url, auth=("admin", "wrong"))
        self.assertEqual(resp.status_code, 401)
        self.assertIn(f"{VIN_A}/1.jpg", self.storage.blobs)

        resp = await self.client.delete(url, auth=("admin", "secret"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True, "vin": VIN_A, "deleted_objects": 1})
        self.assertEqual(self.storage.blobs, {})

        resp = await self.client.delete(url, auth=("admin", "secret"))
        self.assertEqual(resp.status_code, 404)

    async def test_services_not_ready(self):
        app.state.services = None
        resp = await self.client.get(f"{PREFIX}/v1/status/{VIN_A}")
        self.assertEqual(resp.status_code, 503)


if __name__ == "__main__":
    unittest.main()
