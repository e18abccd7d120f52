import asyncio
import unittest

from discovery.db.schemas import ChunkData
from discovery.services.embedding_orchestrator import EmbeddingOrchestrator
from discovery.utils.exceptions import EmbeddingError, ProcessingCancelledError, QuotaExceededError
from tests.unit.fakes import FakeEmbeddingService, FakeUsageGate, make_settings, make_store


class TestEmbeddingOrchestrator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = make_store()
        case = self.store.create_case("Case", created_by="tester")
        self.document = self.store.create_document(case.id, "doc.txt", "text/plain", 10, "tester")
        self.case_id = case.id
        self.settings = make_settings(EMBEDDING_BATCH_SIZE=50, PARALLEL_EMBEDDING_REQUESTS=3)
        self.gate = FakeUsageGate()
        self.progress = []

    def _chunks(self, count):
        return self.store.bulk_insert_chunks(
            self.document.id,
            self.case_id,
            [
                ChunkData(
                    chunk_index=i,
                    content=f"chunk number {i}",
                    content_hash=str(i),
                    start_offset=i,
                    end_offset=i + 1,
                )
                for i in range(count)
            ],
        )

    def _orchestrator(self, service):
        return EmbeddingOrchestrator(self.store, service, self.gate, self.settings)

    async def test_single_group_of_three_batches(self):
        service = FakeEmbeddingService()
        chunks = self._chunks(120)

        rows = await self._orchestrator(service).generate_and_store(chunks, self.progress.append)

        self.assertEqual([len(call) for call in service.calls], [50, 50, 20])
        self.assertEqual(self.progress, [80, 100])
        self.assertEqual(len(rows), 120)
        self.assertEqual(self.store.count_embeddings(self.document.id), 120)

    async def test_progress_across_several_groups(self):
        service = FakeEmbeddingService()
        chunks = self._chunks(350)

        await self._orchestrator(service).generate_and_store(chunks, self.progress.append)

        self.assertEqual(len(service.calls), 7)
        self.assertEqual(self.progress, [34, 69, 80, 100])
        self.assertLessEqual(service.max_in_flight, 3)

    async def test_vectors_follow_chunk_order(self):
        service = FakeEmbeddingService(vector_fn=lambda text: [float(text.rsplit(" ", 1)[1]), 1.0])
        chunks = self._chunks(130)

        rows = await self._orchestrator(service).generate_and_store(chunks, self.progress.append)

        self.assertEqual([row.chunk_id for row in rows], [c.id for c in chunks])
        self.assertEqual([row.embedding[0] for row in rows], [float(i) for i in range(130)])
        self.assertTrue(all(row.model == "fake-embed" for row in rows))

    async def test_tokens_are_recorded_per_batch(self):
        service = FakeEmbeddingService(tokens_per_call=11)
        await self._orchestrator(service).generate_and_store(self._chunks(120), self.progress.append)

        self.assertEqual(self.gate.checks, 3)
        self.assertEqual(self.gate.total("input_tokens"), 33)

    async def test_quota_denied_makes_no_calls(self):
        self.gate.allowed = False
        service = FakeEmbeddingService()

        with self.assertRaises(QuotaExceededError):
            await self._orchestrator(service).generate_and_store(self._chunks(10), self.progress.append)

        self.assertEqual(service.calls, [])
        self.assertEqual(self.store.count_embeddings(self.document.id), 0)
        self.assertEqual(self.progress, [])

    async def test_vector_count_mismatch_fails(self):
        service = FakeEmbeddingService(drop_one=True)

        with self.assertRaises(EmbeddingError):
            await self._orchestrator(service).generate_and_store(self._chunks(10), self.progress.append)

        self.assertEqual(self.store.count_embeddings(self.document.id), 0)

    async def test_backend_failure_is_wrapped(self):
        service = FakeEmbeddingService(fail=True)

        with self.assertRaises(EmbeddingError) as ctx:
            await self._orchestrator(service).generate_and_store(self._chunks(3), self.progress.append)

        self.assertIn("embedding backend unavailable", str(ctx.exception))

    async def test_failed_batch_keeps_sibling_usage(self):
        class OneBadBatch(FakeEmbeddingService):
            async def embed(self, texts, model=None):
                if texts[0] == "chunk number 0":
                    await asyncio.sleep(0)
                    await asyncio.sleep(0)
                    return await super().embed(texts, model)
                raise RuntimeError("batch rejected")

        service = OneBadBatch(tokens_per_call=10)

        with self.assertRaises(EmbeddingError) as ctx:
            await self._orchestrator(service).generate_and_store(self._chunks(60), self.progress.append)

        self.assertIn("batch rejected", str(ctx.exception))
        self.assertEqual(len(service.calls), 1)
        self.assertEqual(service.in_flight, 0)
        self.assertEqual(self.gate.total("input_tokens"), 10)
        self.assertEqual(self.store.count_embeddings(self.document.id), 0)
        self.assertEqual(self.progress, [])

    async def test_empty_input_reports_done(self):
        service = FakeEmbeddingService()
        rows = await self._orchestrator(service).generate_and_store([], self.progress.append)

        self.assertEqual(rows, [])
        self.assertEqual(self.progress, [100])
        self.assertEqual(service.calls, [])

    async def test_cancelled_before_first_group(self):
        cancel = asyncio.Event()
        cancel.set()
        service = FakeEmbeddingService()

        with self.assertRaises(ProcessingCancelledError):
            await self._orchestrator(service).generate_and_store(self._chunks(5), self.progress.append, cancel)

        self.assertEqual(service.calls, [])


if __name__ == "__main__":
    unittest.main()
