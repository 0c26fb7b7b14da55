"""
Aggregate consistency tests: child creation links ids into parent lists,
both child-resolution paths agree, attachment uploads abort on blob
failure, attachment deletes survive blob failure, and reconcile repairs
broken linkage.
"""

from unittest.mock import MagicMock

import pytest

from pirflow.core.exceptions import (
    ConflictError,
    DependencyFailure,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from pirflow.models.pir import Attachment
from pirflow.services.blob_store import BlobStoreError
from pirflow.services.entity_store import EntityStore
from pirflow.services.events import ChildCreated, EventBus
from pirflow.services.pir_aggregate import AggregateManager


# ── Helpers ──────────────────────────────────────────────────────────────────


@pytest.fixture()
def events():
    return EventBus()


@pytest.fixture()
def created(events):
    seen = []
    events.subscribe(ChildCreated, seen.append)
    return seen


@pytest.fixture()
def aggregate(workflow, events):
    """Aggregate manager on the real store and blob store, private event bus."""
    return AggregateManager(EntityStore(), workflow.blobs, events)


@pytest.fixture()
def failing_blobs():
    blobs = MagicMock()
    blobs.put.side_effect = BlobStoreError("bucket unavailable")
    blobs.delete.side_effect = BlobStoreError("bucket unavailable")
    blobs.get.side_effect = BlobStoreError("bucket unavailable")
    return blobs


def _ask(aggregate, pir, actor, text="What allergens?", **kwargs):
    return aggregate.create_question(pir.id, actor, text=text, category="allergens", **kwargs)


def _reload(pir_id):
    return EntityStore().get("pirs", pir_id)


# ── Questions ────────────────────────────────────────────────────────────────


class TestQuestions:
    def test_create_links_into_pir(self, aggregate, created, draft_pir, requester):
        question = _ask(aggregate, draft_pir, requester, required=True)
        assert question.pir_id == draft_pir.id
        assert question.required is True
        assert question.created_by == requester.id
        assert _reload(draft_pir.id).question_ids == [question.id]
        assert created[0].child_type == "question"
        assert created[0].child_id == question.id

    def test_retry_with_same_id_links_once(self, aggregate, created, draft_pir, requester):
        first = _ask(aggregate, draft_pir, requester, question_id="q-fixed")
        again = _ask(aggregate, draft_pir, requester, question_id="q-fixed")
        assert first.id == again.id == "q-fixed"
        assert _reload(draft_pir.id).question_ids == ["q-fixed"]
        assert len(aggregate.list_questions(draft_pir.id)) == 1
        assert len(created) == 1

    def test_retry_relinks_after_lost_link(self, aggregate, draft_pir, requester):
        _ask(aggregate, draft_pir, requester, question_id="q-fixed")
        EntityStore().array_remove("pirs", draft_pir.id, "question_ids", "q-fixed")
        _ask(aggregate, draft_pir, requester, question_id="q-fixed")
        assert _reload(draft_pir.id).question_ids == ["q-fixed"]

    def test_retry_id_from_other_pir_conflicts(self, aggregate, workflow, draft_pir, requester):
        other = workflow.pirs.create_pir(requester, {
            "title": "Other", "description": "d", "product_name": "p", "product_category": "c",
        })
        _ask(aggregate, draft_pir, requester, question_id="q-fixed")
        with pytest.raises(ConflictError):
            _ask(aggregate, other, requester, question_id="q-fixed")

    def test_requires_edit_permission(self, aggregate, draft_pir, responder):
        with pytest.raises(PermissionDenied):
            _ask(aggregate, draft_pir, responder)
        assert _reload(draft_pir.id).question_ids == []

    def test_blank_text_rejected_before_write(self, aggregate, draft_pir, requester):
        with pytest.raises(ValidationError):
            _ask(aggregate, draft_pir, requester, text="   ")
        assert aggregate.list_questions(draft_pir.id) == []

    def test_bulk_validates_everything_first(self, aggregate, draft_pir, requester):
        items = [{"text": "ok", "category": "a"}, {"text": "", "category": "b"}]
        with pytest.raises(ValidationError) as exc:
            aggregate.create_questions(draft_pir.id, requester, items)
        assert "1" in exc.value.details
        assert aggregate.list_questions(draft_pir.id) == []

    def test_bulk_create(self, aggregate, draft_pir, requester):
        items = [{"text": f"Q{i}", "category": "spec"} for i in range(3)]
        questions = aggregate.create_questions(draft_pir.id, requester, items)
        assert _reload(draft_pir.id).question_ids == [q.id for q in questions]

    @pytest.mark.parametrize("error", [
        NotFoundError("PIR", "p"),
        ConflictError("PIR", "version", 3),
    ])
    def test_link_failure_keeps_child(self, aggregate, draft_pir, requester, monkeypatch, error):
        def _fail(*args, **kwargs):
            raise error

        monkeypatch.setattr(aggregate.store, "array_union", _fail)
        question = _ask(aggregate, draft_pir, requester)
        monkeypatch.undo()

        assert aggregate.store.get("questions", question.id) is not None
        assert _reload(draft_pir.id).question_ids == []


class TestDualLookup:
    def test_query_and_id_list_agree(self, aggregate, draft_pir, requester):
        for i in range(4):
            _ask(aggregate, draft_pir, requester, text=f"Q{i}")
        by_query = {q.id for q in aggregate.list_questions(draft_pir.id)}
        by_list = {q.id for q in aggregate.resolve_questions(_reload(draft_pir.id))}
        assert by_query == by_list
        assert len(by_query) == 4

    def test_agree_beyond_batch_ceiling(self, aggregate, draft_pir, requester):
        for i in range(25):
            _ask(aggregate, draft_pir, requester, text=f"Q{i}")
        pir = _reload(draft_pir.id)
        resolved = aggregate.resolve_questions(pir)
        assert [q.id for q in resolved] == pir.question_ids
        assert {q.id for q in aggregate.list_questions(draft_pir.id)} == set(pir.question_ids)

    def test_dangling_ids_filtered(self, aggregate, draft_pir, requester):
        question = _ask(aggregate, draft_pir, requester)
        EntityStore().array_union("pirs", draft_pir.id, "question_ids", "gone")
        assert [q.id for q in aggregate.resolve_questions(_reload(draft_pir.id))] == [question.id]


# ── Answers ──────────────────────────────────────────────────────────────────


class TestAnswers:
    def _requested(self, workflow, pir, requester, responder, admin):
        workflow.pirs.assign_responder(pir.id, admin, responder.id)
        workflow.lifecycle.apply_transition(pir.id, "requested", requester)

    def test_assigned_responder_answers(self, aggregate, created, workflow, draft_pir,
                                        requester, responder, admin):
        question = _ask(aggregate, draft_pir, requester)
        self._requested(workflow, draft_pir, requester, responder, admin)

        answer = aggregate.create_answer(question.id, responder, text="Contains oats.")
        assert answer.pir_id == draft_pir.id
        assert answer.responder_id == responder.id
        assert answer.responder_name == responder.display_name
        assert created[-1].child_type == "answer"

    def test_several_answers_newest_first(self, aggregate, workflow, draft_pir,
                                          requester, responder, admin):
        question = _ask(aggregate, draft_pir, requester)
        self._requested(workflow, draft_pir, requester, responder, admin)
        first = aggregate.create_answer(question.id, responder, text="one")
        second = aggregate.create_answer(question.id, responder, text="two")
        ids = [a.id for a in aggregate.list_answers_for_question(question.id)]
        assert set(ids) == {first.id, second.id}
        assert len(aggregate.list_answers_for_pir(draft_pir.id)) == 2

    def test_requester_cannot_answer_in_draft(self, aggregate, draft_pir, requester, responder):
        question = _ask(aggregate, draft_pir, requester)
        with pytest.raises(PermissionDenied):
            aggregate.create_answer(question.id, responder, text="too early")

    def test_missing_question(self, aggregate, responder):
        with pytest.raises(NotFoundError):
            aggregate.create_answer("nope", responder, text="x")

    def test_list_by_responder_newest_first(self, aggregate, workflow, draft_pir,
                                            requester, responder, admin):
        question = _ask(aggregate, draft_pir, requester)
        self._requested(workflow, draft_pir, requester, responder, admin)
        aggregate.create_answer(question.id, responder, text="one")
        aggregate.create_answer(question.id, responder, text="two")

        answers = aggregate.list_answers_by_responder(responder.id)
        assert {a.text for a in answers} == {"one", "two"}
        assert answers[0].created_at >= answers[1].created_at
        assert aggregate.list_answers_by_responder(requester.id) == []


# ── Edits ────────────────────────────────────────────────────────────────────


class TestEdits:
    def _answered(self, aggregate, workflow, pir, requester, responder, admin):
        question = _ask(aggregate, pir, requester)
        workflow.pirs.assign_responder(pir.id, admin, responder.id)
        workflow.lifecycle.apply_transition(pir.id, "requested", requester)
        return question, aggregate.create_answer(question.id, responder, text="Contains oats.")

    def test_update_question(self, aggregate, draft_pir, requester):
        question = _ask(aggregate, draft_pir, requester)
        start_version = question.version
        updated = aggregate.update_question(
            question.id, requester, {"text": "  Which allergens? ", "required": True},
        )
        assert updated.text == "Which allergens?"
        assert updated.required is True
        assert updated.category == "allergens"
        assert updated.version == start_version + 1

    @pytest.mark.parametrize("patch", [
        {"pir_id": "other"},
        {"attachment_ids": ["a1"]},
        {"created_by": "someone"},
        {},
    ])
    def test_update_question_rejects_non_editable(self, aggregate, draft_pir, requester, patch):
        question = _ask(aggregate, draft_pir, requester)
        with pytest.raises(ValidationError):
            aggregate.update_question(question.id, requester, patch)
        assert aggregate.store.get("questions", question.id).pir_id == draft_pir.id

    def test_update_question_blank_text(self, aggregate, draft_pir, requester):
        question = _ask(aggregate, draft_pir, requester)
        with pytest.raises(ValidationError):
            aggregate.update_question(question.id, requester, {"category": "  "})

    def test_update_question_needs_edit(self, aggregate, draft_pir, requester, responder):
        question = _ask(aggregate, draft_pir, requester)
        with pytest.raises(PermissionDenied):
            aggregate.update_question(question.id, responder, {"text": "hijack"})

    def test_update_question_stale_version(self, aggregate, draft_pir, requester):
        question = _ask(aggregate, draft_pir, requester)
        stale = question.version
        aggregate.update_question(question.id, requester, {"text": "v2"})
        with pytest.raises(ConflictError):
            aggregate.update_question(
                question.id, requester, {"text": "v3"}, expected_version=stale,
            )

    def test_update_answer_by_author(self, aggregate, workflow, draft_pir,
                                     requester, responder, admin):
        _, answer = self._answered(aggregate, workflow, draft_pir, requester, responder, admin)
        updated = aggregate.update_answer(answer.id, responder, {"text": "Contains oats and wheat."})
        assert updated.text == "Contains oats and wheat."
        assert updated.responder_id == responder.id

    def test_update_answer_by_admin(self, aggregate, workflow, draft_pir,
                                    requester, responder, admin):
        _, answer = self._answered(aggregate, workflow, draft_pir, requester, responder, admin)
        assert aggregate.update_answer(answer.id, admin, {"text": "fixed"}).text == "fixed"

    def test_update_answer_by_other_user(self, aggregate, workflow, draft_pir,
                                         requester, responder, admin):
        _, answer = self._answered(aggregate, workflow, draft_pir, requester, responder, admin)
        with pytest.raises(PermissionDenied):
            aggregate.update_answer(answer.id, requester, {"text": "rewritten"})

    @pytest.mark.parametrize("patch", [{"responder_id": "x"}, {"text": ""}, {}])
    def test_update_answer_invalid_patch(self, aggregate, workflow, draft_pir,
                                         requester, responder, admin, patch):
        _, answer = self._answered(aggregate, workflow, draft_pir, requester, responder, admin)
        with pytest.raises(ValidationError):
            aggregate.update_answer(answer.id, responder, patch)

    def test_update_missing_answer(self, aggregate, responder):
        with pytest.raises(NotFoundError):
            aggregate.update_answer("nope", responder, {"text": "x"})


# ── Attachments ──────────────────────────────────────────────────────────────


class TestAttachments:
    def test_upload_stores_blob_and_links(self, aggregate, created, draft_pir, requester):
        attachment = aggregate.upload_attachment(
            "pir", draft_pir.id, requester,
            file_name="spec sheet.pdf", data=b"%PDF-1.4", file_type="application/pdf",
        )
        assert attachment.file_name == "spec sheet.pdf"
        assert attachment.file_size == 8
        assert attachment.parent_type == "pir"
        assert _reload(draft_pir.id).attachment_ids == [attachment.id]
        assert created[-1].child_type == "attachment"

        record, content = aggregate.read_attachment(attachment.id)
        assert content == b"%PDF-1.4"
        assert record.id == attachment.id

    def test_same_name_uploads_keep_separate_blobs(self, aggregate, draft_pir, requester):
        first = aggregate.upload_attachment("pir", draft_pir.id, requester, file_name="a.txt", data=b"one")
        second = aggregate.upload_attachment("pir", draft_pir.id, requester, file_name="a.txt", data=b"two")
        assert first.download_url != second.download_url

        aggregate.delete_attachment(first.id, requester)
        _, content = aggregate.read_attachment(second.id)
        assert content == b"two"

    def test_upload_on_question(self, aggregate, draft_pir, requester):
        question = _ask(aggregate, draft_pir, requester)
        attachment = aggregate.upload_attachment(
            "question", question.id, requester, file_name="a.txt", data=b"abc",
        )
        assert attachment.file_type == "application/octet-stream"
        assert aggregate.store.get("questions", question.id).attachment_ids == [attachment.id]

    def test_blob_failure_creates_no_record(self, draft_pir, requester, failing_blobs, events):
        aggregate = AggregateManager(EntityStore(), failing_blobs, events)
        with pytest.raises(DependencyFailure) as exc:
            aggregate.upload_attachment("pir", draft_pir.id, requester, file_name="a.txt", data=b"x")
        assert exc.value.dependency == "blob_store"
        assert Attachment.query.count() == 0
        assert _reload(draft_pir.id).attachment_ids == []

    def test_invalid_parent_type(self, aggregate, draft_pir, requester):
        with pytest.raises(ValidationError):
            aggregate.upload_attachment("tag", draft_pir.id, requester, file_name="a", data=b"x")

    def test_upload_requires_permission(self, aggregate, draft_pir, responder):
        with pytest.raises(PermissionDenied):
            aggregate.upload_attachment("pir", draft_pir.id, responder, file_name="a", data=b"x")

    def test_delete_unlinks_and_removes_blob(self, aggregate, draft_pir, requester):
        attachment = aggregate.upload_attachment(
            "pir", draft_pir.id, requester, file_name="a.txt", data=b"abc",
        )
        result = aggregate.delete_attachment(attachment.id, requester)
        assert result == {"id": attachment.id, "deleted": True, "blob_deleted": True, "unlinked": True}
        assert aggregate.store.get("attachments", attachment.id) is None
        assert _reload(draft_pir.id).attachment_ids == []

    def test_delete_survives_blob_failure(self, workflow, draft_pir, requester, failing_blobs, events):
        uploader = AggregateManager(EntityStore(), workflow.blobs, events)
        attachment = uploader.upload_attachment(
            "pir", draft_pir.id, requester, file_name="a.txt", data=b"abc",
        )

        aggregate = AggregateManager(EntityStore(), failing_blobs, events)
        result = aggregate.delete_attachment(attachment.id, requester)
        assert result["deleted"] is True
        assert result["blob_deleted"] is False
        with pytest.raises(NotFoundError):
            aggregate.read_attachment(attachment.id)
        assert _reload(draft_pir.id).attachment_ids == []

    def test_delete_by_stranger_denied(self, aggregate, draft_pir, requester, responder):
        attachment = aggregate.upload_attachment(
            "pir", draft_pir.id, requester, file_name="a.txt", data=b"abc",
        )
        with pytest.raises(PermissionDenied):
            aggregate.delete_attachment(attachment.id, responder)

    def test_admin_may_delete(self, aggregate, draft_pir, requester, admin):
        attachment = aggregate.upload_attachment(
            "pir", draft_pir.id, requester, file_name="a.txt", data=b"abc",
        )
        assert aggregate.delete_attachment(attachment.id, admin)["deleted"] is True

    def test_read_blob_failure(self, workflow, draft_pir, requester, failing_blobs, events):
        uploader = AggregateManager(EntityStore(), workflow.blobs, events)
        attachment = uploader.upload_attachment(
            "pir", draft_pir.id, requester, file_name="a.txt", data=b"abc",
        )
        aggregate = AggregateManager(EntityStore(), failing_blobs, events)
        with pytest.raises(DependencyFailure):
            aggregate.read_attachment(attachment.id)

    def test_list_and_resolve_agree(self, aggregate, draft_pir, requester):
        for i in range(3):
            aggregate.upload_attachment("pir", draft_pir.id, requester, file_name=f"{i}.txt", data=b"x")
        listed = {a.id for a in aggregate.list_attachments("pir", draft_pir.id)}
        resolved = {a.id for a in aggregate.resolve_attachments(_reload(draft_pir.id))}
        assert listed == resolved
        assert len(listed) == 3


# ── Reconcile ────────────────────────────────────────────────────────────────


class TestReconcile:
    def test_clean_pir_reports_nothing(self, aggregate, draft_pir, requester, admin):
        _ask(aggregate, draft_pir, requester)
        report = aggregate.reconcile_pir(draft_pir.id, admin)
        assert report["questions"] == {"orphans": [], "dangling": []}
        assert report["attachments"] == {"orphans": [], "dangling": []}

    def test_repairs_orphans_and_dangling(self, aggregate, draft_pir, requester, admin):
        store = EntityStore()
        question = _ask(aggregate, draft_pir, requester)
        attachment = aggregate.upload_attachment(
            "question", question.id, requester, file_name="a.txt", data=b"x",
        )
        store.array_remove("pirs", draft_pir.id, "question_ids", question.id)
        store.array_union("pirs", draft_pir.id, "question_ids", "gone")
        store.array_remove("questions", question.id, "attachment_ids", attachment.id)

        report = aggregate.reconcile_pir(draft_pir.id, admin)

        assert report["questions"] == {"orphans": [question.id], "dangling": ["gone"]}
        assert report["attachments"]["orphans"] == [attachment.id]
        assert _reload(draft_pir.id).question_ids == [question.id]
        assert store.get("questions", question.id).attachment_ids == [attachment.id]

    def test_admin_only(self, aggregate, draft_pir, requester):
        with pytest.raises(PermissionDenied):
            aggregate.reconcile_pir(draft_pir.id, requester)
