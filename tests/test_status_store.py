import pytest

from shared.clock import utc_from_timestamp
from shared.errors import GENERIC_FAILURE_MESSAGE
from shared.models import ChatMessage
from shared.schemas import JobEnvelope, JobPayload, StatusUpdate
from shared.status import ACTIVE_STATUSES, MessageStatus, can_transition, is_terminal, parse_status


def _envelope(message_id, now):
    payload = JobPayload(query="q", user_id="u1", session_id="s1", file_ids=["f1"], is_text_only=False)
    return JobEnvelope.new(message_id, payload, now)


def test_state_machine_rules():
    assert can_transition("queued", "processing")
    assert can_transition("processing", "completed")
    assert can_transition("completed", "completed")
    assert can_transition("processing", "cancelled")
    assert not can_transition("completed", "failed")
    assert not can_transition("cancelled", "queued")
    assert not can_transition("failed", "processing")
    assert parse_status("in_progress") == MessageStatus.PROCESSING
    assert parse_status("bogus") is None
    assert is_terminal("expired")
    assert not is_terminal("queued")


def test_create_message_is_idempotent(store):
    first = store.create_message("m1", "s1", user_id="u1", file_ids=["f1", "f2", "f1"])
    again = store.create_message("m1", "s-other", user_id="u2")

    assert first.status == "queued"
    assert first.file_ids == ["f1", "f2"]
    assert again.session_id == "s1"
    assert again.version == 0


def test_processing_stage_is_merged_not_replaced(store, clock):
    store.create_message("m1", "s1", user_id="u1", metadata={"query": "hello"})
    assert store.mark_queued("m1", "m1:1", max_attempts=3)
    clock.advance(1)
    assert store.mark_processing("m1", _envelope("m1", clock.now()), "worker-a")

    msg = store.get_message("m1")
    stage = msg.processing_stage
    assert msg.status == "processing"
    assert msg.metadata["query"] == "hello"
    assert stage["stage"] == "worker_processing"
    assert stage["worker_id"] == "worker-a"
    assert stage["has_files"] is True
    # keys written by the earlier update survive
    assert stage["job_id"] == "m1:1"
    assert stage["max_attempts"] == 3
    assert "last_updated" in stage
    assert "worker_heartbeat" in msg.metadata
    assert msg.version == 2


def test_terminal_update_applied_twice_is_stable(store, clock):
    store.create_message("m1", "s1")
    store.mark_processing("m1", _envelope("m1", clock.now()), "w")
    assert store.mark_completed("m1", "final answer", usage={"tokens": 12})
    first = store.get_message("m1")

    clock.advance(5)
    assert store.mark_completed("m1", "final answer", usage={"tokens": 12})
    second = store.get_message("m1")

    assert second.status == "completed"
    assert second.content == "final answer"
    assert second.metadata["usage"] == {"tokens": 12}
    assert set(first.processing_stage) <= set(second.processing_stage)
    assert second.processing_stage["stage"] == "worker_completed"


def test_terminal_rows_refuse_other_transitions(store):
    store.create_message("m1", "s1")
    store.mark_completed("m1", "done")

    assert store.mark_failed("m1", "boom") is False
    assert store.mark_processing("m1", _envelope("m1", 0), "w") is False
    msg = store.get_message("m1")
    assert msg.status == "completed"
    assert msg.content == "done"


def test_mark_failed_keeps_partial_content(store):
    store.create_message("m1", "s1")
    store.apply_update("m1", StatusUpdate(status="processing", content="half an answer"))
    store.mark_failed("m1", "Processing failed")
    assert store.get_message("m1").content == "half an answer"

    store.create_message("m2", "s1")
    store.mark_failed("m2", "Processing failed")
    m2 = store.get_message("m2")
    assert m2.content == GENERIC_FAILURE_MESSAGE
    assert m2.processing_stage["error"] == "Processing failed"
    assert "failed_at" in m2.processing_stage


def test_expected_version_guard(store):
    snapshot = store.create_message("m1", "s1")
    store.mark_queued("m1", "m1:1", 3)

    assert store.mark_failed("m1", "late", expected_version=snapshot.version) is False
    assert store.get_message("m1").status == "queued"


def test_missing_row_returns_false(store):
    assert store.mark_completed("nope", "x") is False


def test_external_cancel_is_terminal_for_the_pipeline(store):
    store.create_message("m1", "s1")
    assert store.signal_terminal("m1", MessageStatus.CANCELLED, reason="user cancelled")

    assert store.mark_processing("m1", _envelope("m1", 0), "w") is False
    assert store.mark_completed("m1", "late result") is False
    msg = store.get_message("m1")
    assert msg.status == "cancelled"
    assert msg.processing_stage["error"] == "user cancelled"

    with pytest.raises(ValueError):
        store.signal_terminal("m1", MessageStatus.COMPLETED)


def test_find_stale_orders_oldest_first_and_reads_legacy_status(store, session_factory, clock):
    store.create_message("old", "s1")
    clock.advance(10)
    store.create_message("newer", "s1")
    store.create_message("legacy", "s1")
    store.create_message("done", "s1")
    store.mark_completed("done", "x")

    db = session_factory()
    db.query(ChatMessage).filter(ChatMessage.id == "legacy").update(
        {"status": "in_progress", "updated_at": utc_from_timestamp(clock.now() - 5)}
    )
    db.commit()
    db.close()

    clock.advance(400)
    stale = store.find_stale(ACTIVE_STATUSES, clock.now() - 300)
    assert [m.id for m in stale] == ["old", "legacy", "newer"]
    assert stale[1].message_status == MessageStatus.PROCESSING

    assert store.find_stale(ACTIVE_STATUSES, clock.now() - 1000) == []


def test_find_source_query_prefers_the_stored_query(store, clock):
    store.create_message("u-old", "s1", user_id="u1", role="user", content="an older question")
    clock.advance(1)
    assistant = store.create_message("a-1", "s1", user_id="u1", role="assistant", file_ids=["f-own"],
                                     metadata={"query": "this turn's question"})

    assert store.find_source_query(assistant) == ("this turn's question", ["f-own"])

    user = store.get_message("u-old")
    assert store.find_source_query(user) == ("an older question", [])


def test_find_source_query_falls_back_to_preceding_user_message(store, clock):
    store.create_message("u-1", "s1", user_id="u1", role="user", content="first question")
    clock.advance(1)
    store.create_message("u-2", "s1", user_id="u1", role="user", content="summarise the sheet",
                         file_ids=["file-9"])
    clock.advance(1)
    assistant = store.create_message("a-1", "s1", user_id="u1", role="assistant")
    clock.advance(1)
    store.create_message("u-3", "s1", user_id="u1", role="user", content="later question")

    assert store.find_source_query(assistant) == ("summarise the sheet", ["file-9"])

    nothing = store.create_message("a-2", "s-none", role="assistant")
    assert store.find_source_query(nothing) is None


def test_iter_stale_pages_with_a_cursor(store, clock):
    for message_id in ["b", "a", "c"]:
        store.create_message(message_id, "s1")
    clock.advance(1)
    store.create_message("d", "s1")
    clock.advance(400)

    first_page = store.find_stale(ACTIVE_STATUSES, clock.now() - 300, limit=2)
    assert [m.id for m in first_page] == ["a", "b"]
    cursor = (first_page[-1].last_activity, first_page[-1].id)
    assert [m.id for m in store.find_stale(ACTIVE_STATUSES, clock.now() - 300, limit=2, after=cursor)] == ["c", "d"]

    assert [m.id for m in store.iter_stale(ACTIVE_STATUSES, clock.now() - 300, page_size=2)] == ["a", "b", "c", "d"]
