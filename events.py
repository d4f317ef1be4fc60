import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class StatusEvent:
    seq: int
    source: str
    status: str
    message: str | None = None
    path: str | None = None
    session_id: str | None = None
    elapsed: float | None = None
    level: float | None = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


class EventChannel:
    """Ordered, thread-safe log of status events.

    Producers (capture thread, pipelines, orchestrator) call ``publish``;
    consumers keep a cursor (the last ``seq`` they saw) and read forward with
    ``since`` or block with ``wait``. Sequence numbers only grow, so a consumer
    always sees events in the order they were produced. When ``maxlen`` is
    reached the oldest events are dropped.
    """

    def __init__(self, maxlen: int = 500):
        self._events: deque[StatusEvent] = deque(maxlen=maxlen)
        self._seq = 0
        self._latest: dict[str, StatusEvent] = {}
        self._condition = threading.Condition()

    @property
    def cursor(self) -> int:
        with self._condition:
            return self._seq

    def publish(self, source: str, status: str, message: str | None = None, **fields) -> StatusEvent:
        with self._condition:
            self._seq += 1
            event = StatusEvent(seq=self._seq, source=source, status=status, message=message, **fields)
            self._events.append(event)
            self._latest[source] = event
            self._condition.notify_all()
        return event

    def since(self, cursor: int = 0) -> list[StatusEvent]:
        with self._condition:
            return [e for e in self._events if e.seq > cursor]

    def wait(self, cursor: int, timeout: float = 5.0) -> list[StatusEvent]:
        with self._condition:
            if self._seq <= cursor:
                self._condition.wait(timeout=timeout)
            return [e for e in self._events if e.seq > cursor]

    def latest(self, source: str) -> StatusEvent | None:
        with self._condition:
            return self._latest.get(source)
