from __future__ import annotations

import asyncio
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from typing_extensions import override
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.carimages.container import Services
from backend.carimages.schemas import ImageEntry, Provenance, VehicleRecord
from backend.carimages.services import CacheKeys
from backend.carimages.utils.errors import InvalidIdentifierError
from backend.tests.support import (
    MemoryObjectStorage,
    build_test_services,
    image_size,
    jpeg_bytes,
    legacy_id,
    png_bytes,
    seed_legacy_car,
    session_factory,
)

LEGACY_VIN = "VF1RFB00270131313"
VIN_A = "WVWZZZ1JZXW000001"
VIN_B = "WVWZZZ1JZXW000002"
LOCAL_VIN = "WVWZZZ1JZXW000009"
PAST = datetime(2023, 6, 1, tzinfo=timezone.utc)


class ResolutionChainTests(unittest.IsolatedAsyncioTestCase):
    services: Services | None = None

    @override
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_dir = Path(self._tmp.name)
        services, storage = await build_test_services(self.tmp_dir, brand_asset=png_bytes())
        self.services = services
        self.storage: MemoryObjectStorage = storage
        assert services.legacy_engine is not None
        self.legacy_factory = session_factory(services.legacy_engine)
        self.chain = services.chain

    @override
    async def asyncTearDown(self):
        if self.services is not None:
            await self.services.aclose()
        self._tmp.cleanup()

    async def _create_origin(self, vin: str = VIN_A) -> dict[int, bytes]:
        assert self.services is not None
        blobs = {1: jpeg_bytes(color=(10, 20, 30)), 2: jpeg_bytes(color=(40, 50, 60))}
        for position, data in blobs.items():
            await self.storage.put(f"{vin}/{position}.jpg", data)
        await self.services.vehicle_store.create(
            VehicleRecord(
                vin=vin,
                images=[ImageEntry(position=p, locator=f"{vin}/{p}.jpg") for p in blobs],
            )
        )
        return blobs

    def _write_local(self, vin: str, position: int, data: bytes) -> None:
        folder = self.tmp_dir / "own" / vin
        folder.mkdir(parents=True, exist_ok=True)
        (folder / f"{vin}_{position}.jpeg").write_bytes(data)

    async def test_legacy_only_vin_heals_on_read(self):
        assert self.services is not None and self.services.runner is not None
        raw = jpeg_bytes(width=80, height=60)
        await seed_legacy_car(
            self.legacy_factory,
            LEGACY_VIN,
            [(1, legacy_id(1), raw)],
            created_at=PAST,
            updated_at=PAST,
        )

        first = await self.chain.resolve_image(LEGACY_VIN, 1)
        assert first is not None
        self.assertEqual(first.provenance, Provenance.LEGACY)
        self.assertEqual(first.data, self.services.transformer.encode(raw))

        await self.services.runner.wait_idle()

        legacy_store = self.services.legacy_store
        assert legacy_store is not None
        with patch.object(legacy_store, "find_by_vin", side_effect=AssertionError("legacy consulted")) as spy:
            second = await self.chain.resolve_image(LEGACY_VIN, 1)
            status = await self.chain.resolve_status(LEGACY_VIN)
        spy.assert_not_called()

        assert second is not None
        self.assertEqual(second.provenance, Provenance.CANONICAL)
        self.assertEqual(second.data, first.data)
        self.assertTrue(status.found)
        self.assertEqual(status.images, [f"/{LEGACY_VIN}/1"])
        self.assertEqual(status.provenance, Provenance.CANONICAL)

    async def test_canonical_hit_is_cached(self):
        blobs = await self._create_origin()

        first = await self.chain.resolve_image(VIN_A, 1)
        second = await self.chain.resolve_image(VIN_A, 1)

        assert first is not None and second is not None
        self.assertEqual(first.provenance, Provenance.CANONICAL)
        self.assertEqual(first.data, blobs[1])
        self.assertEqual(second.provenance, Provenance.CACHE)
        self.assertEqual(self.storage.gets, 1)

    async def test_unknown_position_is_not_found(self):
        await self._create_origin()
        self.assertIsNone(await self.chain.resolve_image(VIN_A, 7))

    async def test_invalid_identifiers_are_rejected_before_any_store(self):
        assert self.services is not None
        with patch.object(self.services.vehicle_store, "find_by_vin", side_effect=AssertionError("store touched")):
            with self.assertRaises(InvalidIdentifierError):
                await self.chain.resolve_image("NOT-A-VIN", 1)
            with self.assertRaises(InvalidIdentifierError):
                await self.chain.resolve_image(VIN_A, 0)
            with self.assertRaises(InvalidIdentifierError):
                await self.chain.resolve_image(VIN_A, 1, brand="ACME")
            with self.assertRaises(InvalidIdentifierError):
                await self.chain.resolve_status("WVWZZZ1JZXW00000")
            with self.assertRaises(InvalidIdentifierError):
                await self.chain.changed_since("-5")

    async def test_linked_vin_serves_origin_bytes(self):
        assert self.services is not None
        await self._create_origin()
        await self.services.links.create_link(VIN_A, VIN_B)

        for position in (1, 2):
            origin = await self.chain.resolve_image(VIN_A, position)
            linked = await self.chain.resolve_image(VIN_B, position)
            assert origin is not None and linked is not None
            self.assertEqual(linked.data, origin.data)

        status = await self.chain.resolve_status(VIN_B)
        self.assertTrue(status.found)
        self.assertTrue(status.linked)
        self.assertEqual(status.images, [f"/{VIN_B}/1", f"/{VIN_B}/2"])

    async def test_deleting_origin_makes_linked_vin_not_found(self):
        assert self.services is not None
        await self._create_origin()
        await self.services.links.create_link(VIN_A, VIN_B)
        self.assertIsNotNone(await self.chain.resolve_image(VIN_B, 1))
        self.assertTrue((await self.chain.resolve_status(VIN_B)).found)

        await self.services.links.delete_original(VIN_A)

        self.assertIsNone(await self.chain.resolve_image(VIN_B, 1))
        self.assertIsNone(await self.chain.resolve_image(VIN_A, 1))
        self.assertFalse((await self.chain.resolve_status(VIN_B)).found)

    async def test_mutations_are_visible_immediately(self):
        assert self.services is not None
        await self._create_origin()
        self.assertFalse((await self.chain.resolve_status(VIN_B)).found)
        self.assertEqual((await self.chain.changed_since(3600)).data, [VIN_A])

        await self.services.links.create_link(VIN_A, VIN_B)
        self.assertTrue((await self.chain.resolve_status(VIN_B)).found)
        self.assertEqual((await self.chain.changed_since(3600)).data, [VIN_A, VIN_B])

        await self.services.links.delete_link(VIN_B)
        self.assertFalse((await self.chain.resolve_status(VIN_B)).found)
        self.assertEqual((await self.chain.changed_since(3600)).data, [VIN_A])

    async def test_fallback_order_ends_at_local_directory(self):
        local = jpeg_bytes(color=(1, 2, 3))
        self._write_local(LOCAL_VIN, 3, local)

        first = await self.chain.resolve_image(LOCAL_VIN, 3)
        assert first is not None
        self.assertEqual(first.provenance, Provenance.LOCAL)
        self.assertEqual(first.data, local)
        # 本地结果不写缓存
        second = await self.chain.resolve_image(LOCAL_VIN, 3)
        assert second is not None
        self.assertEqual(second.provenance, Provenance.LOCAL)

        status = await self.chain.resolve_status(LOCAL_VIN)
        self.assertTrue(status.found)
        self.assertTrue(status.unmanaged)
        self.assertEqual(status.provenance, Provenance.LOCAL)
        self.assertEqual(status.images, [f"/{LOCAL_VIN}/3"])
        self.assertEqual(status.created_at, status.updated_at)

        self.assertIsNone(await self.chain.resolve_image(LOCAL_VIN, 4))

    async def test_canonical_wins_over_legacy_and_local(self):
        blobs = await self._create_origin()
        await seed_legacy_car(self.legacy_factory, VIN_A, [(1, legacy_id(5), jpeg_bytes(color=(9, 9, 9)))])
        self._write_local(VIN_A, 1, b"local")

        image = await self.chain.resolve_image(VIN_A, 1)

        assert image is not None
        self.assertEqual(image.provenance, Provenance.CANONICAL)
        self.assertEqual(image.data, blobs[1])

    async def test_negative_status_is_cached(self):
        assert self.services is not None
        status = await self.chain.resolve_status(VIN_A)
        self.assertFalse(status.found)
        self.assertIsNotNone(await self.services.cache.get(CacheKeys.status(VIN_A)))

    async def test_shrink_and_brand(self):
        await self._create_origin()

        shrunk = await self.chain.resolve_image(VIN_A, 1, shrink=32)
        assert shrunk is not None
        self.assertEqual(image_size(shrunk.data), (32, 24))

        branded = await self.chain.resolve_image(VIN_A, 1, brand="BRANDDSG")
        plain = await self.chain.resolve_image(VIN_A, 1)
        assert branded is not None and plain is not None
        self.assertNotEqual(branded.data, plain.data)

        # 非 1 号位不加页脚，与原图共用缓存
        other = await self.chain.resolve_image(VIN_A, 2, brand="BRAND")
        assert other is not None
        self.assertEqual(other.provenance, Provenance.CANONICAL)
        again = await self.chain.resolve_image(VIN_A, 2)
        assert again is not None
        self.assertEqual(again.provenance, Provenance.CACHE)

    async def test_transform_failure_serves_unprocessed_bytes(self):
        assert self.services is not None
        blobs = await self._create_origin()
        with patch.object(self.services.transformer, "encode", side_effect=OSError("broken codec")):
            image = await self.chain.resolve_image(VIN_A, 1, shrink=10)
        assert image is not None
        self.assertEqual(image.data, blobs[1])

    async def test_concurrent_misses_share_one_fetch(self):
        await self._create_origin()
        original_get = self.storage.get

        async def _slow_get(key: str):
            await asyncio.sleep(0.05)
            return await original_get(key)

        with patch.object(self.storage, "get", side_effect=_slow_get) as spy:
            results = await asyncio.gather(*[self.chain.resolve_image(VIN_A, 1) for _ in range(5)])

        self.assertEqual(spy.await_count, 1)
        self.assertTrue(all(r is not None and r.data == results[0].data for r in results))

    async def test_cancelled_waiter_does_not_cancel_shared_fetch(self):
        await self._create_origin()
        original_get = self.storage.get

        async def _slow_get(key: str):
            await asyncio.sleep(0.1)
            return await original_get(key)

        with patch.object(self.storage, "get", side_effect=_slow_get):
            first = asyncio.create_task(self.chain.resolve_image(VIN_A, 1))
            second = asyncio.create_task(self.chain.resolve_image(VIN_A, 1))
            await asyncio.sleep(0.02)
            first.cancel()
            result = await second

        assert result is not None
        self.assertEqual(result.provenance, Provenance.CANONICAL)
        with self.assertRaises(asyncio.CancelledError):
            await first

    async def test_slow_tier_falls_through(self):
        assert self.services is not None
        await self._create_origin()
        local = jpeg_bytes(color=(7, 7, 7))
        self._write_local(VIN_A, 1, local)
        self.chain._store_timeout = 0.05

        async def _hang(key: str):
            await asyncio.sleep(5)

        with patch.object(self.storage, "get", side_effect=_hang):
            with self.assertLogs("backend.carimages.services.resolution", level="WARNING"):
                image = await self.chain.resolve_image(VIN_A, 1)

        assert image is not None
        self.assertEqual(image.provenance, Provenance.LOCAL)
        self.assertEqual(image.data, local)

    async def test_changed_since_is_cached(self):
        assert self.services is not None
        await self._create_origin()
        first = await self.chain.changed_since(60)
        self.assertEqual(first.data, [VIN_A])
        self.assertIsNotNone(await self.services.cache.get(CacheKeys.changes(60)))

    async def test_deleted_original_is_not_restored_from_legacy(self):
        assert self.services is not None
        assert self.services.migration is not None and self.services.runner is not None
        await seed_legacy_car(
            self.legacy_factory,
            LEGACY_VIN,
            [(1, legacy_id(1), jpeg_bytes())],
            created_at=PAST,
            updated_at=PAST,
        )
        await self.services.migration.run()
        self.assertIn(f"{LEGACY_VIN}/1.jpg", self.storage.blobs)

        await self.services.links.delete_original(LEGACY_VIN)

        status = await self.chain.resolve_status(LEGACY_VIN)
        image = await self.chain.resolve_image(LEGACY_VIN, 1)
        await self.services.runner.wait_idle()

        self.assertFalse(status.found)
        self.assertIsNone(image)
        self.assertIsNone(await self.services.vehicle_store.find_by_vin(LEGACY_VIN))
        self.assertEqual(self.storage.blobs, {})

        # 定时迁移也不会把它搬回来
        await self.services.migration.run()
        self.assertIsNone(await self.services.vehicle_store.find_by_vin(LEGACY_VIN))
        self.assertEqual(self.storage.blobs, {})

    async def test_legacy_outage_does_not_hide_linked_vin(self):
        assert self.services is not None
        blobs = await self._create_origin()
        await self.services.vehicle_store.create(
            VehicleRecord(
                vin=VIN_B,
                linked=True,
                images=[
                    ImageEntry(position=1, locator=f"{VIN_A}/1.jpg", legacy_image_id=legacy_id(1), origin_vin=VIN_A)
                ],
            )
        )
        legacy_store = self.services.legacy_store
        assert legacy_store is not None

        with (
            patch.object(legacy_store, "find_origin_by_image_id", side_effect=ConnectionError("legacy down")),
            patch.object(legacy_store, "find_by_vin", side_effect=ConnectionError("legacy down")),
        ):
            image = await self.chain.resolve_image(VIN_B, 1)
            status = await self.chain.resolve_status(VIN_B)

        assert image is not None
        self.assertEqual(image.provenance, Provenance.CANONICAL)
        self.assertEqual(image.data, blobs[1])
        self.assertTrue(status.found)
        self.assertTrue(status.linked)
        self.assertEqual(status.images, [f"/{VIN_B}/1"])

    async def test_delete_during_fetch_does_not_leave_stale_cache(self):
        assert self.services is not None
        services = self.services
        await self._create_origin()
        original_get = self.storage.get
        deleted: list[bool] = []

        async def _get_then_delete(key: str):
            data = await original_get(key)
            if not deleted:
                # 读到字节之后、写缓存之前原图被删除
                deleted.append(True)
                await services.links.delete_original(VIN_A)
            return data

        with patch.object(self.storage, "get", side_effect=_get_then_delete):
            await self.chain.resolve_image(VIN_A, 1)

        self.assertTrue(deleted)
        self.assertIsNone(await services.cache.get(CacheKeys.image(VIN_A, 1)))
        self.assertIsNone(await self.chain.resolve_image(VIN_A, 1))

    async def test_delete_during_status_lookup_does_not_leave_stale_cache(self):
        assert self.services is not None
        services = self.services
        await self._create_origin()
        original_find = services.vehicle_store.find_by_vin
        deleted: list[bool] = []

        async def _find_then_delete(vin: str):
            record = await original_find(vin)
            if not deleted:
                deleted.append(True)
                await services.links.delete_original(VIN_A)
            return record

        with patch.object(services.vehicle_store, "find_by_vin", side_effect=_find_then_delete):
            stale = await self.chain.resolve_status(VIN_A)

        self.assertTrue(stale.found)
        self.assertIsNone(await services.cache.get(CacheKeys.status(VIN_A)))
        self.assertFalse((await self.chain.resolve_status(VIN_A)).found)

    async def test_legacy_status_lists_only_positions_with_image_data(self):
        await seed_legacy_car(
            self.legacy_factory,
            LEGACY_VIN,
            [(1, legacy_id(1), jpeg_bytes()), (2, legacy_id(2), None), (3, legacy_id(3), jpeg_bytes())],
            created_at=PAST,
            updated_at=PAST,
        )

        status = await self.chain.resolve_status(LEGACY_VIN)

        self.assertTrue(status.found)
        self.assertEqual(status.provenance, Provenance.LEGACY)
        self.assertEqual(status.images, [f"/{LEGACY_VIN}/1", f"/{LEGACY_VIN}/3"])


if __name__ == "__main__":
    unittest.main()
