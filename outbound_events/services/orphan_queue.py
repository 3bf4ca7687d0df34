from __future__ import annotations

import logging
import math
import random
import time
from collections import Counter, defaultdict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Sequence

from outbound_events.config import settings
from outbound_events.observability import incr_metric, log_event
from outbound_events.providers.base import CanonicalFields
from outbound_events.services.correlation_index import CorrelationIndex, is_unique_violation
from outbound_events.services.event_store import EventStore
from outbound_events.services.normalizer import NormalizedEvent, canonical_from_payload, canonical_to_payload


TABLE = "orphaned_events"
_POLL_INTERVAL_SECONDS = 0.05
# Delay before attempt n+1; the last entry repeats.
DEFAULT_RETRY_DELAYS_SECONDS = (5, 15, 60, 300, 900, 3600)

ResolveOutcome = Literal["created", "duplicate", "no_matching_enrollment", "enrollment_not_found"]
ParkOutcome = Literal["parked", "already_parked"]
MissOutcome = Literal["retried", "dead_lettered", "skipped"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SweepResult:
    candidates: int = 0
    resolved: int = 0
    duplicates: int = 0
    retried: int = 0
    dead_lettered: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ReplayItem:
    id: str
    status: Literal["replayed", "duplicate", "not_found", "unresolved", "failed"]
    provider_event_id: str | None = None
    error: str | None = None


@dataclass
class ReplayResult:
    requested: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[ReplayItem] = field(default_factory=list)


class OrphanQueue:
    """Parks events that could not be correlated, retries them, and dead-letters the rest.

    ``pending`` rows carry their own ``next_retry_at``; :meth:`sweep` only picks
    rows that are due, and each miss pushes the row further along
    ``retry_delays_seconds`` (plus jitter). After ``max_retries`` misses the row
    becomes ``dead_letter``, which only an operator replay or discard leaves.
    Resolution always goes through :meth:`EventStore.store_if_new`, which deletes
    the orphan row in the same transaction as the event insert.

    At most ``max_pending`` rows wait at once; parking beyond that dead-letters
    the oldest pending rows so they stay replayable.
    """

    def __init__(
        self,
        client: Any,
        *,
        event_store: EventStore,
        correlation_index: CorrelationIndex,
        max_retries: int = 6,
        batch_size: int = 50,
        workers: int = 4,
        candidate_timeout_seconds: float = 5.0,
        retry_delays_seconds: Sequence[float] = DEFAULT_RETRY_DELAYS_SECONDS,
        retry_jitter_seconds: float = 1.0,
        max_pending: int = 10_000,
    ):
        self.client = client
        self.event_store = event_store
        self.correlation_index = correlation_index
        self.max_retries = max(1, max_retries)
        self.batch_size = max(1, min(batch_size, 500))
        self.workers = max(1, min(workers, 32))
        self.candidate_timeout_seconds = max(0.1, candidate_timeout_seconds)
        self.retry_delays_seconds = tuple(max(0.0, float(delay)) for delay in retry_delays_seconds) or (0.0,)
        self.retry_jitter_seconds = max(0.0, retry_jitter_seconds)
        self.max_pending = max(1, max_pending)

    def next_retry_at(self, attempts: int, *, now: datetime | None = None) -> str:
        delay = self.retry_delays_seconds[min(attempts, len(self.retry_delays_seconds) - 1)]
        if self.retry_jitter_seconds:
            delay += random.uniform(0, self.retry_jitter_seconds)
        return ((now or datetime.now(timezone.utc)) + timedelta(seconds=delay)).isoformat()

    def _evict_over_capacity(self, request_id: str | None) -> None:
        pending = (
            self.client.table(TABLE).select("id", count="exact").eq("status", "pending").limit(1).execute()
        ).count or 0
        if pending < self.max_pending:
            return
        oldest = (
            self.client.table(TABLE)
            .select("id, provider, provider_event_id")
            .eq("status", "pending")
            .order("created_at")
            .limit(pending - self.max_pending + 1)
            .execute()
        ).data or []
        now_iso = _now_iso()
        for row in oldest:
            self.client.table(TABLE).update(
                {
                    "status": "dead_letter",
                    "dead_lettered_at": now_iso,
                    "last_error": "queue_at_capacity",
                }
            ).eq("id", row["id"]).eq("status", "pending").execute()
            incr_metric("orphans.evicted_at_capacity", provider_slug=row.get("provider"))
            log_event(
                "orphan_evicted_at_capacity",
                level=logging.ERROR,
                request_id=request_id,
                orphan_id=row["id"],
                provider_slug=row.get("provider"),
                provider_event_id=row.get("provider_event_id"),
                pending=pending,
                max_pending=self.max_pending,
            )

    def park(
        self,
        fields: CanonicalFields,
        *,
        reason: str,
        enrollment_id: str | None = None,
        request_id: str | None = None,
    ) -> ParkOutcome:
        self._evict_over_capacity(request_id)
        try:
            self.client.table(TABLE).insert(
                {
                    "provider": fields.provider,
                    "provider_event_id": fields.provider_event_id,
                    "provider_key": fields.provider_key,
                    "enrollment_id": enrollment_id or fields.enrollment_id,
                    "event_type": fields.event_type,
                    "channel": fields.channel,
                    "payload": canonical_to_payload(fields),
                    "reason": reason,
                    "status": "pending",
                    "retry_count": 0,
                    "last_error": None,
                    "last_attempt_at": None,
                    "dead_lettered_at": None,
                    "next_retry_at": self.next_retry_at(0),
                }
            ).execute()
        except Exception as exc:
            if not is_unique_violation(exc):
                raise
            incr_metric("orphans.already_parked", provider_slug=fields.provider)
            return "already_parked"

        incr_metric("orphans.parked", provider_slug=fields.provider, reason=reason)
        log_event(
            "orphan_parked",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug=fields.provider,
            provider_event_id=fields.provider_event_id,
            provider_key=fields.provider_key,
            event_type=fields.event_type,
            reason=reason,
        )
        return "parked"

    def get_orphan(self, orphan_id: str) -> dict[str, Any] | None:
        result = self.client.table(TABLE).select("*").eq("id", orphan_id).limit(1).execute()
        if not result.data:
            return None
        return result.data[0]

    def _resolve(self, row: dict[str, Any], request_id: str | None) -> ResolveOutcome:
        fields = canonical_from_payload(row.get("payload") or {})
        enrollment_id = (
            row.get("enrollment_id")
            or fields.enrollment_id
            or self.correlation_index.lookup(fields.provider, fields.provider_key)
        )
        if not enrollment_id:
            return "no_matching_enrollment"
        stored = self.event_store.store_if_new(
            NormalizedEvent(fields=fields, enrollment_id=enrollment_id),
            orphan_id=row["id"],
            request_id=request_id,
        )
        return stored.outcome

    def _record_miss(self, row: dict[str, Any], reason: str, request_id: str | None) -> MissOutcome:
        previous = int(row.get("retry_count") or 0)
        attempts = previous + 1
        now = datetime.now(timezone.utc)
        update: dict[str, Any] = {
            "retry_count": attempts,
            "reason": reason,
            "last_attempt_at": now.isoformat(),
        }
        outcome: MissOutcome = "retried"
        if attempts >= self.max_retries:
            update["status"] = "dead_letter"
            update["dead_lettered_at"] = now.isoformat()
            update["last_error"] = f"{reason} after {attempts} attempts"
            outcome = "dead_lettered"
        else:
            update["next_retry_at"] = self.next_retry_at(attempts, now=now)
        # Guard on the previous count so overlapping sweeps cannot double-count an attempt.
        result = (
            self.client.table(TABLE)
            .update(update)
            .eq("id", row["id"])
            .eq("status", "pending")
            .eq("retry_count", previous)
            .execute()
        )
        if not result.data:
            incr_metric("orphans.retry_skipped", provider_slug=row.get("provider"))
            log_event(
                "orphan_retry_skipped",
                request_id=request_id,
                provider_slug=row.get("provider"),
                orphan_id=row["id"],
                retry_count=previous,
            )
            return "skipped"
        if outcome == "dead_lettered":
            incr_metric("orphans.dead_lettered", provider_slug=row.get("provider"), reason=reason)
            log_event(
                "orphan_dead_lettered",
                level=logging.WARNING,
                request_id=request_id,
                provider_slug=row.get("provider"),
                provider_event_id=row.get("provider_event_id"),
                orphan_id=row["id"],
                attempts=attempts,
                reason=reason,
            )
        else:
            incr_metric("orphans.retried", provider_slug=row.get("provider"), reason=reason)
        return outcome

    def _attempt(self, row: dict[str, Any], request_id: str | None) -> str:
        outcome = self._resolve(row, request_id)
        if outcome == "created":
            incr_metric("orphans.resolved", provider_slug=row.get("provider"))
            log_event(
                "orphan_resolved",
                request_id=request_id,
                provider_slug=row.get("provider"),
                provider_event_id=row.get("provider_event_id"),
                orphan_id=row["id"],
                attempts=int(row.get("retry_count") or 0) + 1,
            )
            return "resolved"
        if outcome == "duplicate":
            incr_metric("orphans.resolved_duplicate", provider_slug=row.get("provider"))
            return "duplicate"
        return self._record_miss(row, outcome, request_id)

    def pending_candidates(self, *, now: datetime | None = None) -> list[dict[str, Any]]:
        due = (now or datetime.now(timezone.utc)).isoformat()
        result = (
            self.client.table(TABLE)
            .select("*")
            .eq("status", "pending")
            .lte("next_retry_at", due)
            .order("next_retry_at")
            .limit(self.batch_size)
            .execute()
        )
        return result.data or []

    def sweep_deadline_seconds(self, candidates: int) -> float:
        return math.ceil(candidates / self.workers) * self.candidate_timeout_seconds

    def _count_timeout(self, row: dict[str, Any], summary: SweepResult, request_id: str | None) -> None:
        summary.timed_out += 1
        incr_metric("orphans.sweep.candidate_timeout", provider_slug=row.get("provider"))
        log_event(
            "orphan_sweep_candidate_timeout",
            level=logging.WARNING,
            request_id=request_id,
            orphan_id=row["id"],
            provider_slug=row.get("provider"),
            timeout_seconds=self.candidate_timeout_seconds,
        )

    def sweep(self, *, request_id: str | None = None) -> SweepResult:
        """Attempt every due orphan once.

        Each candidate is bounded by ``candidate_timeout_seconds`` once a worker
        picks it up, and the whole cycle by :meth:`sweep_deadline_seconds`, so
        hung lookups holding every worker cannot keep queued candidates waiting.
        Unfinished candidates stay pending for a later sweep.
        """
        rows = self.pending_candidates()
        summary = SweepResult(candidates=len(rows))
        if not rows:
            return summary

        deadline = time.monotonic() + self.sweep_deadline_seconds(len(rows))
        started_at: dict[str, float] = {}

        def _work(row: dict[str, Any]) -> str:
            started_at[row["id"]] = time.monotonic()
            return self._attempt(row, request_id)

        executor = ThreadPoolExecutor(max_workers=self.workers)
        futures: dict[Future[str], dict[str, Any]] = {executor.submit(_work, row): row for row in rows}
        pending: set[Future[str]] = set(futures)
        try:
            while pending:
                done, pending = wait(pending, timeout=_POLL_INTERVAL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    row = futures[future]
                    error = future.exception()
                    if error is not None:
                        summary.failed += 1
                        incr_metric("orphans.sweep.candidate_failed", provider_slug=row.get("provider"))
                        log_event(
                            "orphan_sweep_candidate_failed",
                            level=logging.ERROR,
                            request_id=request_id,
                            orphan_id=row["id"],
                            provider_slug=row.get("provider"),
                            error=str(error),
                        )
                        continue
                    outcome = future.result()
                    if outcome == "resolved":
                        summary.resolved += 1
                    elif outcome == "duplicate":
                        summary.duplicates += 1
                    elif outcome == "dead_lettered":
                        summary.dead_lettered += 1
                    elif outcome == "skipped":
                        summary.skipped += 1
                    else:
                        summary.retried += 1
                now = time.monotonic()
                if now >= deadline and pending:
                    log_event(
                        "orphan_sweep_deadline_reached",
                        level=logging.WARNING,
                        request_id=request_id,
                        unfinished=len(pending),
                    )
                    for future in pending:
                        self._count_timeout(futures[future], summary, request_id)
                    break
                for future in list(pending):
                    row = futures[future]
                    started = started_at.get(row["id"])
                    if started is not None and now - started > self.candidate_timeout_seconds:
                        pending.discard(future)
                        self._count_timeout(row, summary, request_id)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        incr_metric("orphans.sweep.completed")
        log_event("orphan_sweep_completed", request_id=request_id, **summary.as_dict())
        return summary

    def list_dead_lettered(
        self,
        *,
        provider: str | None = None,
        reason: str | None = None,
        from_ts: datetime | None = None,
        to_ts: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        bounded_limit = max(1, min(limit, 200))
        bounded_offset = max(0, offset)
        query = self.client.table(TABLE).select("*").eq("status", "dead_letter")
        if provider:
            query = query.eq("provider", provider)
        if reason:
            query = query.eq("reason", reason)
        if from_ts:
            query = query.gte("created_at", from_ts.isoformat())
        if to_ts:
            query = query.lte("created_at", to_ts.isoformat())
        result = (
            query.order("created_at", desc=True)
            .range(bounded_offset, bounded_offset + bounded_limit - 1)
            .execute()
        )
        return result.data or []

    def replay(self, orphan_ids: list[str], *, request_id: str | None = None) -> ReplayResult:
        summary = ReplayResult(requested=len(orphan_ids))
        seen: set[str] = set()
        for orphan_id in orphan_ids:
            if orphan_id in seen:
                continue
            seen.add(orphan_id)
            row = self.get_orphan(orphan_id)
            if not row or row.get("status") != "dead_letter":
                summary.failed += 1
                summary.results.append(ReplayItem(id=orphan_id, status="not_found"))
                continue
            try:
                outcome = self._resolve(row, request_id)
            except Exception as exc:
                summary.failed += 1
                incr_metric("orphans.replay.failed", provider_slug=row.get("provider"))
                log_event(
                    "dead_letter_replay_failed",
                    level=logging.ERROR,
                    request_id=request_id,
                    orphan_id=orphan_id,
                    provider_slug=row.get("provider"),
                    error=str(exc),
                )
                summary.results.append(
                    ReplayItem(
                        id=orphan_id,
                        status="failed",
                        provider_event_id=row.get("provider_event_id"),
                        error="storage_failure",
                    )
                )
                continue
            if outcome in ("created", "duplicate"):
                summary.succeeded += 1
                incr_metric("orphans.replay.succeeded", provider_slug=row.get("provider"), outcome=outcome)
                summary.results.append(
                    ReplayItem(
                        id=orphan_id,
                        status="replayed" if outcome == "created" else "duplicate",
                        provider_event_id=row.get("provider_event_id"),
                    )
                )
                continue
            summary.failed += 1
            self.client.table(TABLE).update(
                {"last_error": outcome, "last_attempt_at": _now_iso()}
            ).eq("id", orphan_id).execute()
            summary.results.append(
                ReplayItem(
                    id=orphan_id,
                    status="unresolved",
                    provider_event_id=row.get("provider_event_id"),
                    error=outcome,
                )
            )

        log_event(
            "dead_letter_replay_completed",
            request_id=request_id,
            requested=summary.requested,
            succeeded=summary.succeeded,
            failed=summary.failed,
        )
        return summary

    def discard(self, orphan_ids: list[str], *, request_id: str | None = None) -> dict[str, int]:
        discarded = 0
        not_found = 0
        for orphan_id in dict.fromkeys(orphan_ids):
            result = self.client.table(TABLE).delete().eq("id", orphan_id).eq("status", "dead_letter").execute()
            if result.data:
                discarded += 1
            else:
                not_found += 1
        incr_metric("orphans.discarded", value=discarded)
        log_event(
            "dead_letters_discarded",
            level=logging.WARNING,
            request_id=request_id,
            requested=len(orphan_ids),
            discarded=discarded,
            not_found=not_found,
        )
        return {"requested": len(orphan_ids), "discarded": discarded, "not_found": not_found}

    def stats(self, *, window_hours: int = 24) -> dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(hours=max(1, window_hours))
        events = (
            self.client.table("campaign_events")
            .select("provider, event_type")
            .gte("created_at", since.isoformat())
            .execute()
        ).data or []
        orphans = (
            self.client.table(TABLE)
            .select("provider, status")
            .gte("created_at", since.isoformat())
            .execute()
        ).data or []

        events_by_provider: dict[str, Counter[str]] = defaultdict(Counter)
        for row in events:
            events_by_provider[row.get("provider") or "unknown"][row.get("event_type") or "unknown"] += 1
        orphans_by_provider: dict[str, Counter[str]] = defaultdict(Counter)
        for row in orphans:
            orphans_by_provider[row.get("provider") or "unknown"][row.get("status") or "unknown"] += 1

        return {
            "window_hours": max(1, window_hours),
            "since": since,
            "events": {provider: dict(counts) for provider, counts in events_by_provider.items()},
            "orphans": {provider: dict(counts) for provider, counts in orphans_by_provider.items()},
        }


def build_orphan_queue(
    client: Any,
    *,
    event_store: EventStore | None = None,
    correlation_index: CorrelationIndex | None = None,
) -> OrphanQueue:
    return OrphanQueue(
        client,
        event_store=event_store or EventStore(client),
        correlation_index=correlation_index or CorrelationIndex(client),
        max_retries=settings.orphan_max_retries,
        batch_size=settings.orphan_sweep_batch_size,
        workers=settings.orphan_sweep_workers,
        candidate_timeout_seconds=settings.orphan_candidate_timeout_seconds,
        retry_delays_seconds=settings.orphan_retry_delays_seconds,
        retry_jitter_seconds=settings.orphan_retry_jitter_seconds,
        max_pending=settings.orphan_max_pending,
    )
