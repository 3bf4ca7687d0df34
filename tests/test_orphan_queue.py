import time
from datetime import datetime, timedelta, timezone

from outbound_events.providers.registry import get_provider
from outbound_events.services.correlation_index import CorrelationIndex
from outbound_events.services.event_store import EventStore
from outbound_events.services.normalizer import NormalizedEvent
from outbound_events.services.orphan_queue import OrphanQueue

from fake_supabase import FakeSupabase


def _fields(event_id: str, message_id: str, event_type: str = "delivered"):
    return get_provider("generic").normalize(
        {
            "event_id": event_id,
            "event_type": event_type,
            "timestamp": "2024-03-05T10:00:00Z",
            "message_id": message_id,
        }
    )


def _queue(db: FakeSupabase, **kwargs) -> OrphanQueue:
    kwargs.setdefault("candidate_timeout_seconds", 2.0)
    kwargs.setdefault("retry_delays_seconds", (0,))
    kwargs.setdefault("retry_jitter_seconds", 0.0)
    return OrphanQueue(
        db,
        event_store=EventStore(db),
        correlation_index=CorrelationIndex(db),
        **kwargs,
    )


def _seeded_db() -> FakeSupabase:
    db = FakeSupabase()
    db.seed_instance("inst-1")
    db.seed_enrollment("enr-1", "inst-1")
    return db


def test_park_is_idempotent_per_event():
    db = _seeded_db()
    queue = _queue(db)
    assert queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment") == "parked"
    assert queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment") == "already_parked"
    rows = db.rows("orphaned_events")
    assert len(rows) == 1
    assert rows[0]["status"] == "pending"
    assert rows[0]["retry_count"] == 0
    assert rows[0]["payload"]["provider_event_id"] == "o-1"


def test_sweep_resolves_orphan_once_key_is_recorded():
    db = _seeded_db()
    queue = _queue(db)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")

    CorrelationIndex(db).record_outbound_key("enr-1", "generic", "m-1")
    result = queue.sweep()

    assert result.candidates == 1
    assert result.resolved == 1
    assert db.rows("orphaned_events") == []
    assert len(db.rows("campaign_events")) == 1
    assert db.find("campaign_instances", id="inst-1")["total_delivered"] == 1


def test_sweep_miss_increments_retry_count():
    db = _seeded_db()
    queue = _queue(db)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")

    result = queue.sweep()

    assert result.retried == 1
    row = db.rows("orphaned_events")[0]
    assert row["retry_count"] == 1
    assert row["status"] == "pending"
    assert row["last_attempt_at"] is not None


def test_orphan_is_dead_lettered_after_max_retries():
    db = _seeded_db()
    queue = _queue(db, max_retries=3)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")

    outcomes = [queue.sweep() for _ in range(4)]

    assert [o.retried for o in outcomes[:2]] == [1, 1]
    assert outcomes[2].dead_lettered == 1
    assert outcomes[3].candidates == 0
    row = db.rows("orphaned_events")[0]
    assert row["status"] == "dead_letter"
    assert row["retry_count"] == 3
    assert row["dead_lettered_at"] is not None
    assert "no_matching_enrollment" in row["last_error"]


def test_echoed_enrollment_not_yet_committed_resolves_later():
    db = _seeded_db()
    queue = _queue(db)
    queue.park(_fields("o-1", "m-1"), reason="enrollment_not_found", enrollment_id="enr-late")

    first = queue.sweep()
    assert first.retried == 1
    assert db.rows("orphaned_events")[0]["reason"] == "enrollment_not_found"

    db.seed_enrollment("enr-late", "inst-1")
    second = queue.sweep()
    assert second.resolved == 1
    assert db.rows("campaign_events")[0]["enrollment_id"] == "enr-late"


def test_storing_the_event_elsewhere_clears_the_parked_copy():
    db = _seeded_db()
    queue = _queue(db)
    fields = _fields("o-1", "m-1")
    queue.park(fields, reason="no_matching_enrollment")

    EventStore(db).store_if_new(NormalizedEvent(fields=fields, enrollment_id="enr-1"))

    assert db.rows("orphaned_events") == []
    assert queue.sweep().candidates == 0
    assert db.find("campaign_instances", id="inst-1")["total_delivered"] == 1


def test_orphan_whose_event_already_exists_is_removed_as_duplicate():
    db = _seeded_db()
    queue = _queue(db)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")
    CorrelationIndex(db).record_outbound_key("enr-1", "generic", "m-1")
    # Event row committed by another writer after the sweep listed its candidates.
    db.rows("campaign_events").append(
        {"id": "ev-existing", "provider": "generic", "provider_event_id": "o-1", "enrollment_id": "enr-1"}
    )

    result = queue.sweep()

    assert result.duplicates == 1
    assert db.rows("orphaned_events") == []
    assert db.find("campaign_instances", id="inst-1")["total_delivered"] == 0


def test_one_failing_candidate_does_not_abort_sweep(monkeypatch):
    db = _seeded_db()
    queue = _queue(db)
    queue.park(_fields("o-1", "bad"), reason="no_matching_enrollment")
    queue.park(_fields("o-2", "good"), reason="no_matching_enrollment")
    CorrelationIndex(db).record_outbound_key("enr-1", "generic", "good")

    original_lookup = queue.correlation_index.lookup

    def _lookup(provider, provider_key):
        if provider_key == "bad":
            raise RuntimeError("index unavailable")
        return original_lookup(provider, provider_key)

    monkeypatch.setattr(queue.correlation_index, "lookup", _lookup)
    result = queue.sweep()

    assert result.failed == 1
    assert result.resolved == 1
    remaining = db.rows("orphaned_events")
    assert [row["provider_event_id"] for row in remaining] == ["o-1"]
    assert remaining[0]["retry_count"] == 0


def test_slow_candidate_times_out_without_stalling_sweep(monkeypatch):
    db = _seeded_db()
    queue = _queue(db, candidate_timeout_seconds=0.2, workers=2)
    queue.park(_fields("o-1", "slow"), reason="no_matching_enrollment")
    queue.park(_fields("o-2", "fast"), reason="no_matching_enrollment")
    CorrelationIndex(db).record_outbound_key("enr-1", "generic", "fast")

    original_lookup = queue.correlation_index.lookup

    def _lookup(provider, provider_key):
        if provider_key == "slow":
            time.sleep(1.5)
            return None
        return original_lookup(provider, provider_key)

    monkeypatch.setattr(queue.correlation_index, "lookup", _lookup)
    started = time.monotonic()
    result = queue.sweep()
    elapsed = time.monotonic() - started

    assert result.timed_out == 1
    assert result.resolved == 1
    assert elapsed < 1.2


def test_hung_workers_cannot_hold_queued_candidates_past_the_sweep_deadline(monkeypatch):
    db = _seeded_db()
    queue = _queue(db, candidate_timeout_seconds=0.2, workers=1)
    queue.park(_fields("o-1", "hang-1"), reason="no_matching_enrollment")
    queue.park(_fields("o-2", "hang-2"), reason="no_matching_enrollment")

    def _lookup(provider, provider_key):
        time.sleep(1.5)
        return None

    monkeypatch.setattr(queue.correlation_index, "lookup", _lookup)
    started = time.monotonic()
    result = queue.sweep()
    elapsed = time.monotonic() - started

    assert result.candidates == 2
    assert result.timed_out == 2
    assert elapsed < 1.0
    assert [row["status"] for row in db.rows("orphaned_events")] == ["pending", "pending"]


def test_next_retry_follows_backoff_schedule():
    db = _seeded_db()
    queue = _queue(db, retry_delays_seconds=(5, 15))
    now = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)

    assert queue.next_retry_at(0, now=now) == (now + timedelta(seconds=5)).isoformat()
    assert queue.next_retry_at(1, now=now) == (now + timedelta(seconds=15)).isoformat()
    assert queue.next_retry_at(7, now=now) == (now + timedelta(seconds=15)).isoformat()

    jittered = _queue(db, retry_delays_seconds=(5,), retry_jitter_seconds=1.0)
    scheduled = datetime.fromisoformat(jittered.next_retry_at(0, now=now))
    assert now + timedelta(seconds=5) <= scheduled <= now + timedelta(seconds=6)


def test_missed_orphan_waits_for_its_next_retry():
    db = _seeded_db()
    queue = _queue(db, retry_delays_seconds=(0, 60))
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")

    first = queue.sweep()
    second = queue.sweep()

    assert first.retried == 1
    assert second.candidates == 0
    row = db.rows("orphaned_events")[0]
    assert row["retry_count"] == 1
    next_retry = datetime.fromisoformat(row["next_retry_at"])
    assert next_retry > datetime.now(timezone.utc) + timedelta(seconds=50)
    later = datetime.now(timezone.utc) + timedelta(seconds=61)
    assert [r["id"] for r in queue.pending_candidates(now=later)] == [row["id"]]


def test_parking_past_capacity_dead_letters_oldest_pending():
    db = _seeded_db()
    queue = _queue(db, max_pending=2)
    for index in range(3):
        queue.park(_fields(f"o-{index}", f"m-{index}"), reason="no_matching_enrollment")

    rows = {row["provider_event_id"]: row for row in db.rows("orphaned_events")}
    assert rows["o-0"]["status"] == "dead_letter"
    assert rows["o-0"]["last_error"] == "queue_at_capacity"
    assert rows["o-1"]["status"] == "pending"
    assert rows["o-2"]["status"] == "pending"
    assert [row["id"] for row in queue.list_dead_lettered()] == [rows["o-0"]["id"]]


def test_concurrent_attempt_is_reported_as_skipped(monkeypatch):
    db = _seeded_db()
    queue = _queue(db)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")

    def _lookup(provider, provider_key):
        # Another sweep records its attempt while this one is still looking up.
        db.rows("orphaned_events")[0]["retry_count"] = 1
        return None

    monkeypatch.setattr(queue.correlation_index, "lookup", _lookup)
    result = queue.sweep()

    assert result.skipped == 1
    assert result.retried == 0
    assert db.rows("orphaned_events")[0]["retry_count"] == 1


def test_replay_dead_letter_after_key_arrives():
    db = _seeded_db()
    queue = _queue(db, max_retries=1)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")
    queue.sweep()
    orphan_id = db.rows("orphaned_events")[0]["id"]
    assert db.rows("orphaned_events")[0]["status"] == "dead_letter"

    CorrelationIndex(db).record_outbound_key("enr-1", "generic", "m-1")
    result = queue.replay([orphan_id])

    assert result.succeeded == 1
    assert result.failed == 0
    assert result.results[0].status == "replayed"
    assert db.rows("orphaned_events") == []
    assert db.find("campaign_instances", id="inst-1")["total_delivered"] == 1


def test_replay_without_correlation_stays_dead_lettered():
    db = _seeded_db()
    queue = _queue(db, max_retries=1)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")
    queue.sweep()
    orphan_id = db.rows("orphaned_events")[0]["id"]

    result = queue.replay([orphan_id, "missing-id"])

    assert result.succeeded == 0
    assert result.failed == 2
    assert [item.status for item in result.results] == ["unresolved", "not_found"]
    assert db.rows("orphaned_events")[0]["status"] == "dead_letter"


def test_replay_after_event_was_stored_is_noop():
    db = _seeded_db()
    queue = _queue(db, max_retries=1)
    fields = _fields("o-1", "m-1")
    queue.park(fields, reason="no_matching_enrollment")
    queue.sweep()
    orphan_id = db.rows("orphaned_events")[0]["id"]

    EventStore(db).store_if_new(NormalizedEvent(fields=fields, enrollment_id="enr-1"))
    result = queue.replay([orphan_id])

    assert result.results[0].status == "not_found"
    assert db.rows("orphaned_events") == []
    assert len(db.rows("campaign_events")) == 1
    assert db.find("campaign_instances", id="inst-1")["total_delivered"] == 1


def test_replay_reports_duplicate_when_event_row_already_exists():
    db = _seeded_db()
    queue = _queue(db, max_retries=1)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")
    queue.sweep()
    orphan_id = db.rows("orphaned_events")[0]["id"]
    CorrelationIndex(db).record_outbound_key("enr-1", "generic", "m-1")
    db.rows("campaign_events").append(
        {"id": "ev-existing", "provider": "generic", "provider_event_id": "o-1", "enrollment_id": "enr-1"}
    )

    result = queue.replay([orphan_id])

    assert result.results[0].status == "duplicate"
    assert db.rows("orphaned_events") == []
    assert len(db.rows("campaign_events")) == 1


def test_pending_orphans_are_not_replayable():
    db = _seeded_db()
    queue = _queue(db)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")
    orphan_id = db.rows("orphaned_events")[0]["id"]
    result = queue.replay([orphan_id])
    assert result.results[0].status == "not_found"


def test_list_and_discard_dead_letters():
    db = _seeded_db()
    queue = _queue(db, max_retries=1)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")
    queue.park(_fields("o-2", "m-2"), reason="no_matching_enrollment")
    queue.park(_fields("o-3", "m-3"), reason="no_matching_enrollment")
    queue.sweep()
    queue.park(_fields("o-4", "m-4"), reason="no_matching_enrollment")

    listed = queue.list_dead_lettered(provider="generic", limit=2)
    assert len(listed) == 2
    assert all(row["status"] == "dead_letter" for row in listed)
    assert len(queue.list_dead_lettered(offset=2)) == 1
    assert queue.list_dead_lettered(provider="lemlist") == []

    future = datetime.now(timezone.utc) + timedelta(hours=1)
    assert queue.list_dead_lettered(from_ts=future) == []

    ids = [row["id"] for row in listed]
    summary = queue.discard(ids + ["missing-id"])
    assert summary == {"requested": 3, "discarded": 2, "not_found": 1}
    statuses = sorted(row["status"] for row in db.rows("orphaned_events"))
    assert statuses == ["dead_letter", "pending"]


def test_stats_counts_events_and_orphans_by_provider():
    db = _seeded_db()
    queue = _queue(db, max_retries=1)
    queue.park(_fields("o-1", "m-1"), reason="no_matching_enrollment")
    queue.sweep()
    queue.park(_fields("o-2", "m-2"), reason="no_matching_enrollment")
    EventStore(db).store_if_new(NormalizedEvent(fields=_fields("e-1", "m-9", "opened"), enrollment_id="enr-1"))

    stats = queue.stats(window_hours=24)
    assert stats["events"] == {"generic": {"opened": 1}}
    assert stats["orphans"] == {"generic": {"dead_letter": 1, "pending": 1}}
