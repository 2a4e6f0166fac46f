from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

DONE_MESSAGE = 'DONE'
SSE_MEDIA_TYPE = 'text/event-stream'


class EventType(str, Enum):
    INFO = 'info'
    SUCCESS = 'success'
    ERROR = 'error'
    PROGRESS = 'progress'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class StreamEvent:
    message: str
    type: EventType = EventType.INFO
    timestamp: datetime = field(default_factory=_now)

    def as_dict(self) -> dict:
        return {
            'message': self.message,
            'type': self.type.value,
            'timestamp': self.timestamp.isoformat().replace('+00:00', 'Z'),
        }

    def encode(self) -> str:
        return f'data: {json.dumps(self.as_dict(), ensure_ascii=False)}\n\n'


def info(message: str) -> StreamEvent:
    return StreamEvent(message, EventType.INFO)


def success(message: str) -> StreamEvent:
    return StreamEvent(message, EventType.SUCCESS)


def error(message: str) -> StreamEvent:
    return StreamEvent(message, EventType.ERROR)


def progress(message: str) -> StreamEvent:
    return StreamEvent(message, EventType.PROGRESS)


def done() -> StreamEvent:
    return StreamEvent(DONE_MESSAGE, EventType.SUCCESS)


def encode_events(events: Iterable[StreamEvent]) -> Iterator[str]:
    for event in events:
        yield event.encode()


def parse_event_line(line: str) -> dict | None:
    line = line.strip()
    if not line.startswith('data:'):
        return None
    return json.loads(line[len('data:'):].strip())


def run_stream(job, *, session_factory, logger=None) -> Iterator[str]:
    """Run ``job(db)`` in its own session and encode its events.

    Failures become an error event; the stream always ends with DONE.
    """
    with session_factory() as db:
        try:
            for event in job(db):
                yield event.encode()
            db.commit()
        except Exception as exc:
            db.rollback()
            if logger is not None:
                logger.exception('stream_job_failed')
            yield error(f'Error: {exc}').encode()
        yield done().encode()
