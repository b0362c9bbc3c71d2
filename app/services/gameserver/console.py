import re
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from database.schemas import LogLine

# "12:34:56.789  SCRIPT       (E): message"
LINE_PATTERN = re.compile(r"^\s*(?:\d{2}:\d{2}:\d{2}(?:\.\d+)?\s+)?(?P<category>\w+)\s*(?:\((?P<level>[EWI])\))?\s*:")


def infer_severity(text: str) -> str:
    match = LINE_PATTERN.match(text)
    level = match.group("level") if match else None
    category = match.group("category") if match else None

    if level == "E" or "ERROR" in text:
        return "error"
    if level == "W" or "WARNING" in text:
        return "warning"
    if category == "SCRIPT":
        return "script"
    if category == "BACKEND":
        return "backend"
    return "info"


class ConsoleBuffer:
    """Bounded ring of the most recent console lines of one server process.

    Lines get a monotonically increasing ``seq`` so pollers can ask for
    "everything after N" without duplicates or gaps.
    """

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._lines = deque(maxlen=capacity)
        self._seq = 0
        self._lock = threading.Lock()

    @property
    def last_seq(self) -> int:
        return self._seq

    def append(self, text: str, timestamp: Optional[datetime] = None) -> LogLine:
        with self._lock:
            self._seq += 1
            line = LogLine(
                seq=self._seq,
                text=text,
                timestamp=timestamp or datetime.now(timezone.utc),
                severity=infer_severity(text),
            )
            self._lines.append(line)
            return line

    def extend(self, texts: Iterable[str]) -> List[LogLine]:
        return [self.append(t) for t in texts]

    def tail(self, max_lines: int, since: Optional[int] = None) -> List[LogLine]:
        with self._lock:
            lines = list(self._lines)
        if since is not None:
            lines = [l for l in lines if l.seq > since]
        if max_lines <= 0:
            return []
        return [l.model_copy() for l in lines[-max_lines:]]

    def clear(self):
        with self._lock:
            self._lines.clear()

    def __len__(self):
        return len(self._lines)
