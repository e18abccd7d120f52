import unittest
from datetime import date

from discovery.db.models import (
    ChunkEmbedding,
    DocumentStatus,
    ProcessingJobStatus,
    ProcessingJobType,
    ThemeAnalysisStatus,
    is_valid_document_transition,
)
from discovery.db.schemas import ChunkData, QuestionDraft, ThemeDraft
from discovery.services.theme_extractor import link_questions_to_themes
from discovery.utils.exceptions import (
    CaseNotFoundError,
    DocumentNotFoundError,
    InvalidStatusTransitionError,
)
from tests.unit.fakes import make_store


class TestDocumentTransitions(unittest.TestCase):
    def test_forward_moves_allowed(self):
        self.assertTrue(is_valid_document_transition(DocumentStatus.pending, DocumentStatus.ocr))
        self.assertTrue(is_valid_document_transition(DocumentStatus.ocr, DocumentStatus.chunking))
        self.assertTrue(is_valid_document_transition(DocumentStatus.embedding, DocumentStatus.completed))

    def test_backward_and_terminal_moves_rejected(self):
        self.assertFalse(is_valid_document_transition(DocumentStatus.chunking, DocumentStatus.ocr))
        self.assertFalse(is_valid_document_transition(DocumentStatus.completed, DocumentStatus.error))
        self.assertFalse(is_valid_document_transition(DocumentStatus.error, DocumentStatus.pending))

    def test_error_from_any_active_stage(self):
        for status in (DocumentStatus.pending, DocumentStatus.ocr, DocumentStatus.chunking, DocumentStatus.embedding):
            self.assertTrue(is_valid_document_transition(status, DocumentStatus.error))


class TestDiscoveryStore(unittest.TestCase):
    def setUp(self):
        self.store = make_store()
        self.case = self.store.create_case("Acme v. Widget", created_by="alice", description="Supply dispute")

    def _document_with_chunks(self, name="a.txt", count=2):
        document = self.store.create_document(self.case.id, name, "text/plain", 42, "alice")
        chunks = self.store.bulk_insert_chunks(
            document.id,
            self.case.id,
            [
                ChunkData(chunk_index=i, content=f"text {i}", content_hash=str(i), start_offset=i, end_offset=i + 1)
                for i in range(count)
            ],
        )
        self.store.bulk_insert_embeddings(
            [
                ChunkEmbedding(
                    chunk_id=c.id, document_id=document.id, case_id=self.case.id, embedding=[1.0, 0.0], model="m"
                )
                for c in chunks
            ]
        )
        job = self.store.create_job(document.id, self.case.id, ProcessingJobType.ocr)
        return document, chunks, job

    def test_case_lookup(self):
        self.assertEqual(self.store.require_case(self.case.id).name, "Acme v. Widget")
        with self.assertRaises(CaseNotFoundError):
            self.store.require_case("missing")
        with self.assertRaises(CaseNotFoundError):
            self.store.create_document("missing", "a.txt", "text/plain", 1, "alice")

    def test_update_case_rejects_unknown_fields(self):
        updated = self.store.update_case(self.case.id, name="Renamed")
        self.assertEqual(updated.name, "Renamed")
        with self.assertRaises(ValueError):
            self.store.update_case(self.case.id, created_by="mallory")

    def test_status_guard(self):
        document = self.store.create_document(self.case.id, "a.txt", "text/plain", 1, "alice")

        self.store.update_document_status(document.id, DocumentStatus.chunking)
        with self.assertRaises(InvalidStatusTransitionError):
            self.store.update_document_status(document.id, DocumentStatus.ocr)

        self.store.update_document_status(document.id, DocumentStatus.error, error_message="boom")
        with self.assertRaises(InvalidStatusTransitionError):
            self.store.update_document_status(document.id, DocumentStatus.completed)

        stored = self.store.require_document(document.id)
        self.assertEqual(stored.status, DocumentStatus.error)
        self.assertEqual(stored.error_message, "boom")

    def test_document_stats_include_every_status(self):
        first = self.store.create_document(self.case.id, "a.txt", "text/plain", 1, "alice")
        self.store.create_document(self.case.id, "b.txt", "text/plain", 1, "alice")
        self.store.update_document_status(first.id, DocumentStatus.completed)

        stats = self.store.get_document_stats(self.case.id)

        self.assertEqual(stats.total, 2)
        self.assertEqual(stats.by_status["completed"], 1)
        self.assertEqual(stats.by_status["pending"], 1)
        self.assertEqual(stats.by_status["error"], 0)
        self.assertEqual(set(stats.by_status), {s.value for s in DocumentStatus})

    def test_delete_document_removes_dependents(self):
        document, _, _ = self._document_with_chunks()
        other, _, _ = self._document_with_chunks("b.txt")

        self.store.delete_document(document.id)

        self.assertIsNone(self.store.get_document(document.id))
        self.assertEqual(self.store.get_chunks(document.id), [])
        self.assertEqual(self.store.count_embeddings(document.id), 0)
        self.assertEqual(self.store.get_jobs_for_document(document.id), [])
        self.assertEqual(self.store.count_embeddings(other.id), 2)
        with self.assertRaises(DocumentNotFoundError):
            self.store.delete_document(document.id)

    def test_delete_case_cascades(self):
        self._document_with_chunks()
        self.store.add_search_history(self.case.id, "late delivery", 0, [])
        self.store.replace_themes(
            self.case.id,
            [ThemeDraft(title="Delay")],
            [QuestionDraft(question="Why?", theme_title="Delay")],
            [],
            link_questions_to_themes,
        )
        self.store.upsert_theme_analysis(self.case.id, ThemeAnalysisStatus.completed, document_count=1)
        survivor = self.store.create_case("Other", created_by="bob")

        self.store.delete_case(self.case.id)

        stats = self.store.get_database_stats()
        self.assertEqual(stats, {
            "cases": 1,
            "documents": 0,
            "chunks": 0,
            "embeddings": 0,
            "jobs": 0,
            "searches": 0,
            "themes": 0,
        })
        self.assertEqual(self.store.get_questions(self.case.id), [])
        self.assertIsNone(self.store.get_theme_analysis(self.case.id))
        self.assertIsNotNone(self.store.get_case(survivor.id))
        with self.assertRaises(CaseNotFoundError):
            self.store.delete_case(self.case.id)

    def test_job_lifecycle(self):
        document = self.store.create_document(self.case.id, "a.txt", "text/plain", 1, "alice")
        job = self.store.create_job(document.id, self.case.id, ProcessingJobType.embedding)

        self.assertEqual(job.status, ProcessingJobStatus.processing)
        self.assertIsNotNone(job.started_at)
        self.assertEqual([j.id for j in self.store.get_active_jobs(self.case.id)], [job.id])

        self.store.update_job(job.id, progress=250)
        done = self.store.update_job(job.id, status=ProcessingJobStatus.completed, progress=100)

        self.assertEqual(done.progress, 100)
        self.assertIsNotNone(done.completed_at)
        self.assertEqual(self.store.get_active_jobs(self.case.id), [])

    def test_replace_themes_links_questions(self):
        saved = self.store.replace_themes(
            self.case.id,
            [ThemeDraft(title="Delay", relevance_score=0.6), ThemeDraft(title="Payment", relevance_score=0.9)],
            [
                QuestionDraft(question="When?", theme_title="payment", priority=2),
                QuestionDraft(question="Who?", theme_title="nobody", priority=5),
            ],
            ["doc-1"],
            link_questions_to_themes,
        )
        ids = {t.title: t.id for t in saved}

        themes = self.store.get_themes(self.case.id)
        questions = self.store.get_questions(self.case.id)

        self.assertEqual([t.title for t in themes], ["Payment", "Delay"])
        self.assertEqual(themes[0].supporting_doc_ids, ["doc-1"])
        self.assertEqual([(q.question, q.theme_id) for q in questions], [("Who?", ids["Delay"]), ("When?", ids["Payment"])])

        self.store.replace_themes(self.case.id, [ThemeDraft(title="Only")], [], [], link_questions_to_themes)
        self.assertEqual([t.title for t in self.store.get_themes(self.case.id)], ["Only"])
        self.assertEqual(self.store.get_questions(self.case.id), [])

    def test_usage_accumulates_per_period(self):
        start, end = date(2026, 1, 1), date(2026, 1, 30)
        self.store.add_usage(start, end, input_tokens=10, ocr_pages=2)
        self.store.add_usage(start, end, input_tokens=5, output_tokens=3)

        record = self.store.get_usage_record(start)

        self.assertEqual((record.input_tokens, record.output_tokens, record.ocr_pages), (15, 3, 2))
        self.assertIsNone(self.store.get_usage_record(date(2026, 2, 1)))

    def test_clear_all_data(self):
        self._document_with_chunks()
        self.store.clear_all_data()
        self.assertEqual(set(self.store.get_database_stats().values()), {0})


if __name__ == "__main__":
    unittest.main()
