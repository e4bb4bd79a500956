import unittest

import fakeredis

from digitizer.adapters.record_store import WorkRecordStore
from digitizer.errors import ConflictError, NotFoundError, ValidationError
from digitizer.models import WorkRecord


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class WorkRecordStoreUnitTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.redis = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        self.clock = FakeClock()
        self.store = WorkRecordStore(self.redis, clock=self.clock)

    async def asyncTearDown(self):
        await self.redis.aclose()

    async def _create(self, record_id: str, **kwargs) -> WorkRecord:
        record = await self.store.create(WorkRecord(id=record_id, image_url="https://img.example/a.png", **kwargs))
        self.clock.now += 1
        return record

    async def test_create_and_get(self):
        await self._create("r1", source_language_hints=["en", "hi"], target_language="fr")

        record = await self.store.get("r1")

        self.assertEqual(record.status, "pending")
        self.assertEqual(record.source_language_hints, ["en", "hi"])
        self.assertEqual(record.target_language, "fr")
        self.assertEqual(record.created_at, 1_700_000_000_000)

    async def test_create_twice_conflicts(self):
        await self._create("r1")
        with self.assertRaises(ConflictError):
            await self._create("r1")

    async def test_require_missing_record(self):
        with self.assertRaises(NotFoundError) as ctx:
            await self.store.require("nope")
        self.assertEqual(ctx.exception.message, "Digitization with ID 'nope' not found.")

    async def test_transition_writes_fields(self):
        await self._create("r1")

        self.assertTrue(await self.store.transition("r1", "processing", attempts_made=1))
        self.assertTrue(
            await self.store.transition(
                "r1",
                "completed",
                recognized_text="hello",
                translated_text=None,
                translation_skipped=True,
            )
        )

        record = await self.store.get("r1")
        self.assertEqual(record.status, "completed")
        self.assertEqual(record.recognized_text, "hello")
        self.assertIsNone(record.translated_text)
        self.assertTrue(record.translation_skipped)
        self.assertEqual(record.attempts_made, 1)

    async def test_terminal_status_is_sticky(self):
        await self._create("r1")
        await self.store.transition("r1", "processing")
        await self.store.transition("r1", "failed", failure_reason="boom")

        self.assertFalse(await self.store.transition("r1", "processing"))
        self.assertFalse(await self.store.transition("r1", "completed", recognized_text="late"))

        record = await self.store.get("r1")
        self.assertEqual(record.status, "failed")
        self.assertEqual(record.failure_reason, "boom")
        self.assertIsNone(record.recognized_text)

    async def test_update_fields_refused_once_terminal(self):
        await self._create("r1")
        await self.store.transition("r1", "processing")
        self.assertTrue(await self.store.update_fields("r1", failure_reason="first try failed"))

        await self.store.transition("r1", "completed", failure_reason=None, recognized_text="ok")
        self.assertFalse(await self.store.update_fields("r1", failure_reason="late"))

        record = await self.store.get("r1")
        self.assertIsNone(record.failure_reason)

    async def test_update_fields_cannot_change_status(self):
        await self._create("r1")
        with self.assertRaises(ValueError):
            await self.store.update_fields("r1", status="completed")

    async def test_transition_missing_record(self):
        with self.assertRaises(NotFoundError):
            await self.store.transition("missing", "processing")

    async def test_list_newest_first_with_status_filter(self):
        await self._create("a")
        await self._create("b")
        await self._create("c")
        await self.store.transition("b", "processing")

        records, total = await self.store.list_records()
        self.assertEqual(total, 3)
        self.assertEqual([r.id for r in records], ["c", "b", "a"])

        records, total = await self.store.list_records(status="processing")
        self.assertEqual(total, 1)
        self.assertEqual([r.id for r in records], ["b"])

        records, total = await self.store.list_records(status="pending", offset=1, limit=1)
        self.assertEqual(total, 2)
        self.assertEqual([r.id for r in records], ["a"])

    async def test_list_limit_below_one_returns_one_page(self):
        await self._create("a")
        await self._create("b")

        records, total = await self.store.list_records(limit=0)
        self.assertEqual(total, 2)
        self.assertEqual([r.id for r in records], ["b"])

        records, _ = await self.store.list_records(offset=-5, limit=-1)
        self.assertEqual([r.id for r in records], ["b"])

    async def test_list_rejects_unknown_status(self):
        with self.assertRaises(ValidationError):
            await self.store.list_records(status="archived")

    async def test_delete(self):
        await self._create("r1")

        self.assertTrue(await self.store.delete("r1"))
        self.assertFalse(await self.store.delete("r1"))
        self.assertIsNone(await self.store.get("r1"))
        self.assertEqual(await self.store.list_records(), ([], 0))


if __name__ == "__main__":
    unittest.main()
