"""Structured event logs and in-process counters for the ingestion service.

Every log line is a single JSON object. Email addresses are masked and any
field whose name ends in a credential-like suffix is replaced before the line
is written, so webhook headers and payload fragments can be logged as-is.

Counters are keyed ``name|label=value,...``. They live in this process until
a sweep or replay persists a snapshot to ``observability_metric_snapshots``
and, when an export target is configured, posts it to an external sink.
"""
from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass
from threading import Lock
from typing import Any

import httpx

from outbound_events.config import settings


logger = logging.getLogger("outbound_events")

SNAPSHOT_TABLE = "observability_metric_snapshots"
REDACTED = "[redacted]"

_EMAIL = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")
_CREDENTIAL_SUFFIXES = ("secret", "signature", "token", "authorization", "password", "api_key")

_counters: Counter[str] = Counter()
_counters_lock = Lock()


def redact_text(value: str) -> str:
    return _EMAIL.sub(r"\1***@\2", value)


def _is_credential(field_name: str) -> bool:
    return field_name.lower().endswith(_CREDENTIAL_SUFFIXES)


def _scrub(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {str(k): REDACTED if _is_credential(str(k)) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_scrub(item) for item in value]
    return redact_text(str(value))


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    line: dict[str, Any] = {"event": event}
    if request_id:
        line["request_id"] = request_id
    for name, value in fields.items():
        line[name] = REDACTED if _is_credential(name) else _scrub(value)
    logger.log(level, json.dumps(line, sort_keys=True, default=str))


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    return name + "|" + ",".join(f"{label}={labels[label]}" for label in sorted(labels))


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{label: _scrub(v) for label, v in labels.items()})
    with _counters_lock:
        _counters[key] += value


def metrics_snapshot() -> dict[str, int]:
    with _counters_lock:
        return dict(_counters)


def sum_metrics(prefix: str) -> int:
    """Total of every counter whose name starts with prefix, across all label sets."""
    with _counters_lock:
        return sum(count for key, count in _counters.items() if key.partition("|")[0].startswith(prefix))


def reset_metrics() -> None:
    with _counters_lock:
        _counters.clear()


@dataclass
class SnapshotExport:
    url: str
    bearer_token: str | None = None
    timeout_seconds: float = 3.0


def configured_export() -> SnapshotExport | None:
    if not settings.observability_export_url:
        return None
    return SnapshotExport(
        url=settings.observability_export_url,
        bearer_token=settings.observability_export_bearer_token,
        timeout_seconds=settings.observability_export_timeout_seconds,
    )


def _export_snapshot(export: SnapshotExport, body: dict[str, Any], *, request_id: str | None) -> None:
    headers = {"Content-Type": "application/json"}
    if export.bearer_token:
        headers["Authorization"] = f"Bearer {export.bearer_token}"
    try:
        with httpx.Client(timeout=export.timeout_seconds) as client:
            response = client.post(export.url, headers=headers, json=body)
    except httpx.HTTPError as exc:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=body["source"],
            export_url=export.url,
            error=str(exc),
        )
        return
    if response.status_code >= 400:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=body["source"],
            export_url=export.url,
            status_code=response.status_code,
            response_text=response.text[:200],
        )
        return
    log_event(
        "metrics_snapshot_exported",
        request_id=request_id,
        source=body["source"],
        status_code=response.status_code,
    )


def persist_metrics_snapshot(
    *,
    supabase_client: Any,
    source: str,
    request_id: str | None = None,
    reset_after_persist: bool = False,
    export: SnapshotExport | None = None,
) -> bool:
    """Store the current counters; returns False only when the table write fails.

    Export failures are logged and never fail the call.
    """
    body = {"source": source, "request_id": request_id, "counters": metrics_snapshot()}
    try:
        supabase_client.table(SNAPSHOT_TABLE).insert(body).execute()
    except Exception as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    if export is not None:
        _export_snapshot(export, body, request_id=request_id)

    log_event(
        "metrics_snapshot_persisted",
        request_id=request_id,
        source=source,
        counter_count=len(body["counters"]),
    )
    if reset_after_persist:
        reset_metrics()
    return True
