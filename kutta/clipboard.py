import datetime
import json
import threading
from dataclasses import dataclass


@dataclass
class ClipboardEntry:
    text: str
    timestamp: datetime.datetime

    def to_dict(self):
        return {'text': self.text, 'timestamp': self.timestamp.isoformat()}


class ClipboardStore:
    """Shared text snippets in the order they were posted."""

    def __init__(self):
        self._entries = []
        self._lock = threading.Lock()

    def append(self, text):
        """Add ``text``; empty text is ignored. Returns the new entry or None."""
        if not text:
            return None
        entry = ClipboardEntry(text=text, timestamp=datetime.datetime.now().astimezone())
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self):
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._entries = []

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def to_json(self):
        return json.dumps([e.to_dict() for e in self.entries()])
