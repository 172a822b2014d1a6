"""Infer watch sessions from chat message timestamps.

A viewer is assumed to have been watching for ``pre_buffer`` before their
first message and ``post_buffer`` after each message.  Messages closer
together than ``post_buffer`` belong to the same session; a longer gap closes
the current session at ``previous + post_buffer`` and opens a new one.  When
the stream's start/end times are known, sessions are clamped to them.

:class:`WatchSessionAccumulator` does this one timestamp at a time, keeping
only the open session, so a day's messages can be streamed straight from a
cursor.  :func:`reconstruct_sessions` is the batch form.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from shared.dates import coerce_datetime

PRE_BUFFER = timedelta(minutes=10)
POST_BUFFER = timedelta(minutes=30)


@dataclass(frozen=True)
class WatchSession:
    start: datetime
    end: datetime

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.end - self.start).total_seconds())


@dataclass
class SessionSummary:
    sessions: list[WatchSession] = field(default_factory=list)
    total_seconds: int = 0
    message_count: int = 0


class WatchSessionAccumulator:
    """Streaming session builder with constant memory."""

    def __init__(
        self,
        *,
        stream_start: datetime | None = None,
        stream_end: datetime | None = None,
        pre_buffer: timedelta = PRE_BUFFER,
        post_buffer: timedelta = POST_BUFFER,
    ) -> None:
        if pre_buffer < timedelta(0) or post_buffer < timedelta(0):
            raise ValueError("Session buffers must not be negative")
        self.stream_start = coerce_datetime(stream_start) if stream_start else None
        self.stream_end = coerce_datetime(stream_end) if stream_end else None
        self.pre_buffer = pre_buffer
        self.post_buffer = post_buffer

        self._open_start: datetime | None = None
        self._last_message: datetime | None = None
        self._closed_seconds = 0.0
        self.session_count = 0
        self.message_count = 0

    def _clamp_start(self, value: datetime) -> datetime:
        if self.stream_start is not None and value < self.stream_start:
            value = self.stream_start
        # A message after the stream ended opens an empty session at the end
        if self.stream_end is not None and value > self.stream_end:
            value = self.stream_end
        return value

    def _clamp_end(self, value: datetime) -> datetime:
        if self.stream_end is not None and value > self.stream_end:
            return self.stream_end
        return value

    def _close(self) -> WatchSession:
        assert self._open_start is not None and self._last_message is not None
        end = self._clamp_end(self._last_message + self.post_buffer)
        session = WatchSession(start=self._open_start, end=max(end, self._open_start))
        self._closed_seconds += session.duration_seconds
        self.session_count += 1
        return session

    def add(self, timestamp: datetime) -> WatchSession | None:
        """Feed the next message time.  Returns the session it closed, if any.

        Timestamps must arrive in non-decreasing order.
        """
        ts = coerce_datetime(timestamp)
        self.message_count += 1

        if self._open_start is None or self._last_message is None:
            self._open_start = self._clamp_start(ts - self.pre_buffer)
            self._last_message = ts
            return None

        if ts < self._last_message:
            raise ValueError(
                f"Message timestamps must be sorted: {ts.isoformat()} < {self._last_message.isoformat()}"
            )

        if ts - self._last_message <= self.post_buffer:
            self._last_message = ts
            return None

        closed = self._close()
        # The new session may not reach back into the one just closed
        self._open_start = max(self._clamp_start(ts - self.pre_buffer), closed.end)
        self._last_message = ts
        return closed

    def finish(self) -> WatchSession | None:
        """Close the trailing session.  The accumulator is reset afterwards."""
        if self._open_start is None:
            return None
        session = self._close()
        self._open_start = None
        self._last_message = None
        return session

    @property
    def total_seconds(self) -> int:
        """Seconds across sessions closed so far (call :meth:`finish` first)."""
        return round(self._closed_seconds)


def reconstruct_sessions(
    timestamps: Iterable[datetime],
    *,
    stream_start: datetime | None = None,
    stream_end: datetime | None = None,
    pre_buffer: timedelta = PRE_BUFFER,
    post_buffer: timedelta = POST_BUFFER,
) -> SessionSummary:
    """Replay a sorted sequence of message times into sessions."""
    acc = WatchSessionAccumulator(
        stream_start=stream_start,
        stream_end=stream_end,
        pre_buffer=pre_buffer,
        post_buffer=post_buffer,
    )
    sessions: list[WatchSession] = []
    for ts in timestamps:
        closed = acc.add(ts)
        if closed is not None:
            sessions.append(closed)
    last = acc.finish()
    if last is not None:
        sessions.append(last)
    return SessionSummary(
        sessions=sessions,
        total_seconds=acc.total_seconds,
        message_count=acc.message_count,
    )
