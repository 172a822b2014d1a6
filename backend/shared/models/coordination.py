"""Data models for the listener lease tables."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from shared.dates import coerce_datetime


@dataclass
class ChannelListenerLock:
    """Which instance currently owns a channel's live listening workload."""

    channel_id: str
    instance_id: str
    last_heartbeat: datetime
    acquired_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ChannelListenerLock:
        return cls(
            channel_id=row["channel_id"],
            instance_id=row["instance_id"],
            last_heartbeat=coerce_datetime(row["last_heartbeat"]),
            acquired_at=coerce_datetime(row["acquired_at"]),
        )


@dataclass
class ListenerInstance:
    """A running worker process, as last reported by its heartbeat."""

    instance_id: str
    channel_count: int
    last_heartbeat: datetime
    started_at: datetime | None = None
    is_healthy: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any], *, now: datetime, timeout_seconds: float) -> ListenerInstance:
        last_heartbeat = coerce_datetime(row["last_heartbeat"])
        started_at = row.get("started_at")
        return cls(
            instance_id=row["instance_id"],
            channel_count=int(row.get("channel_count") or 0),
            last_heartbeat=last_heartbeat,
            started_at=coerce_datetime(started_at) if started_at is not None else None,
            is_healthy=(now - last_heartbeat).total_seconds() < timeout_seconds,
        )
