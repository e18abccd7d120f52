import asyncio
import unittest

from discovery.db.models import DocumentStatus, ProcessingJobStatus, ProcessingJobType
from discovery.db.schemas import OcrStatus, UploadedFile
from discovery.services.document_pipeline import DocumentPipeline
from discovery.services.embedding_orchestrator import EmbeddingOrchestrator
from discovery.services.ocr_service import OcrPoller
from discovery.services.text_extraction_service import TextExtractionService
from discovery.utils.exceptions import (
    DocxExtractionError,
    InvalidStatusTransitionError,
    ProcessingCancelledError,
    QuotaExceededError,
    StuckJobError,
)
from tests.unit.fakes import (
    FakeClock,
    FakeEmbeddingService,
    FakeOcrService,
    FakeUsageGate,
    make_settings,
    make_store,
    sentence_text,
)


class TestDocumentPipeline(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.settings = make_settings(MAX_CONCURRENT_DOCUMENTS=2)
        self.store = make_store()
        self.case = self.store.create_case("Acme v. Widget", created_by="alice")
        self.gate = FakeUsageGate()
        self.clock = FakeClock()
        self.ocr = FakeOcrService([OcrStatus(status="completed", text=sentence_text(1500), page_count=3)])
        self.embeddings = FakeEmbeddingService()
        self.events = []

    def _pipeline(self):
        extraction = TextExtractionService(
            self.ocr,
            self.gate,
            self.settings,
            poller_factory=lambda: OcrPoller(self.ocr, self.settings, sleep=self.clock.sleep, clock=self.clock),
        )
        orchestrator = EmbeddingOrchestrator(self.store, self.embeddings, self.gate, self.settings)
        return DocumentPipeline(self.store, extraction, orchestrator, self.settings)

    def _text_upload(self, length=2500, name="memo.txt"):
        return UploadedFile(content=sentence_text(length).encode("utf-8"), file_name=name, content_type="text/plain")

    async def test_text_upload_completes(self):
        document = await self._pipeline().upload_document(
            self.case.id, self._text_upload(), "alice", on_progress=self.events.append
        )

        self.assertEqual(document.status, DocumentStatus.completed)
        stored = self.store.require_document(document.id)
        self.assertEqual(len(stored.extracted_text), 2500)
        self.assertEqual(stored.file_size, 2500)
        self.assertEqual(len(self.store.get_chunks(document.id)), 3)
        self.assertEqual(self.store.count_embeddings(document.id), 3)

        jobs = self.store.get_jobs_for_document(document.id)
        self.assertEqual(
            [(j.type, j.status) for j in jobs],
            [
                (ProcessingJobType.ocr, ProcessingJobStatus.completed),
                (ProcessingJobType.chunking, ProcessingJobStatus.completed),
                (ProcessingJobType.embedding, ProcessingJobStatus.completed),
            ],
        )
        self.assertTrue(all(j.progress == 100 for j in jobs))

        stages = [e.stage for e in self.events]
        self.assertEqual(stages[0], "uploading")
        self.assertEqual(stages[-1], "completed")
        self.assertLess(stages.index("ocr"), stages.index("chunking"))
        self.assertLess(stages.index("chunking"), stages.index("embedding"))
        self.assertEqual(self.ocr.submitted, [])

    async def test_scanned_upload_uses_ocr(self):
        upload = UploadedFile(content=b"%PDF-1.4", file_name="scan.pdf", content_type="application/pdf")

        document = await self._pipeline().upload_document(self.case.id, upload, "alice")

        stored = self.store.require_document(document.id)
        self.assertEqual(stored.status, DocumentStatus.completed)
        self.assertEqual(stored.page_count, 3)
        self.assertEqual(self.ocr.submitted, ["scan.pdf"])
        self.assertEqual(self.gate.total("ocr_pages"), 3)
        self.assertEqual(len(self.store.get_chunks(document.id)), 2)

        jobs = {job.type: job for job in self.store.get_jobs_for_document(document.id)}
        self.assertEqual(jobs[ProcessingJobType.ocr].external_job_id, "job-1")
        self.assertIsNone(jobs[ProcessingJobType.chunking].external_job_id)

    async def test_stuck_ocr_marks_document_error(self):
        self.ocr = FakeOcrService([OcrStatus(status="processing", chunks_completed=0, chunks_processing=0)])
        upload = UploadedFile(content=b"%PDF-1.4", file_name="scan.pdf", content_type="application/pdf")
        pipeline = self._pipeline()

        with self.assertRaises(StuckJobError):
            await pipeline.upload_document(self.case.id, upload, "alice", on_progress=self.events.append)

        document = self.store.list_documents(self.case.id)[0]
        self.assertEqual(document.status, DocumentStatus.error)
        self.assertIn("appears stuck", document.error_message)

        jobs = self.store.get_jobs_for_document(document.id)
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0].status, ProcessingJobStatus.failed)
        self.assertIn("appears stuck", jobs[0].error_message)
        self.assertEqual(jobs[0].external_job_id, "job-1")
        self.assertEqual(self.store.get_chunks(document.id), [])

        self.assertEqual(self.events[-1].stage, "error")
        self.assertIn("appears stuck", self.events[-1].error)

    async def test_quota_denied_during_embedding(self):
        self.gate.allowed = False
        self.gate.reason = "input_token_limit"

        with self.assertRaises(QuotaExceededError):
            await self._pipeline().upload_document(self.case.id, self._text_upload(), "alice")

        document = self.store.list_documents(self.case.id)[0]
        self.assertEqual(document.status, DocumentStatus.error)
        self.assertIn("input_token_limit", document.error_message)
        self.assertEqual(self.embeddings.calls, [])
        self.assertEqual(self.store.count_embeddings(document.id), 0)

        jobs = self.store.get_jobs_for_document(document.id)
        self.assertEqual(jobs[-1].type, ProcessingJobType.embedding)
        self.assertEqual(jobs[-1].status, ProcessingJobStatus.failed)

    async def test_cancelled_run_marks_document_error(self):
        cancel = asyncio.Event()
        cancel.set()

        with self.assertRaises(ProcessingCancelledError):
            await self._pipeline().upload_document(self.case.id, self._text_upload(), "alice", cancel_event=cancel)

        document = self.store.list_documents(self.case.id)[0]
        self.assertEqual(document.status, DocumentStatus.error)
        self.assertEqual(self.store.get_jobs_for_document(document.id), [])

    async def test_completed_document_cannot_regress(self):
        pipeline = self._pipeline()
        document = await pipeline.upload_document(self.case.id, self._text_upload(), "alice")

        with self.assertRaises(InvalidStatusTransitionError):
            await pipeline.process_document(document.id, self._text_upload())

        self.assertEqual(self.store.require_document(document.id).status, DocumentStatus.completed)

    async def test_process_many_isolates_failures(self):
        good = self.store.create_document(self.case.id, "a.txt", "text/plain", 2500, "alice")
        bad = self.store.create_document(self.case.id, "b.docx", "application/octet-stream", 3, "alice")
        other = self.store.create_document(self.case.id, "c.txt", "text/plain", 1200, "alice")

        results = await self._pipeline().process_many([
            (good.id, self._text_upload(2500, "a.txt")),
            (bad.id, UploadedFile(content=b"bad", file_name="b.docx")),
            (other.id, self._text_upload(1200, "c.txt")),
        ])

        self.assertEqual(results[0].status, DocumentStatus.completed)
        self.assertIsInstance(results[1], DocxExtractionError)
        self.assertEqual(results[2].status, DocumentStatus.completed)
        self.assertEqual(self.store.require_document(bad.id).status, DocumentStatus.error)

        stats = self.store.get_document_stats(self.case.id)
        self.assertEqual(stats.by_status["completed"], 2)
        self.assertEqual(stats.by_status["error"], 1)


if __name__ == "__main__":
    unittest.main()
