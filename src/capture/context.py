"""
Capture session state and identity.
"""

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Set

from src.core import utc_now

_FORUM_PATH = re.compile(r"/forum/(\d+)")

DEFAULT_TENANT_ID = 1


def resolve_tenant_id(path: Optional[str] = None, stored: Optional[int] = None) -> int:
    """
    Tenant of the page being tracked: the id in a ``/forum/<id>`` path,
    else the last stored tenant, else the default tenant.
    """
    match = _FORUM_PATH.search(path or "")
    if match:
        return int(match.group(1))
    return stored or DEFAULT_TENANT_ID


@dataclass
class SessionContext:
    """
    State of one capture session.

    Owned by a single CaptureClient; two clients in the same process never
    share counters or identity.
    """
    tenant_id: int
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utc_now)
    page_view_count: int = 0
    visited_paths: Set[str] = field(default_factory=set)
    event_counter: int = 0
    flushed: bool = False

    def next_event_id(self) -> str:
        """Idempotency key for the next envelope: sha256(session:counter)[:32]."""
        self.event_counter += 1
        return hashlib.sha256(f"{self.session_id}:{self.event_counter}".encode()).hexdigest()[:32]

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        return max(0.0, ((now or utc_now()) - self.started_at).total_seconds())

    @property
    def is_bounce(self) -> bool:
        return self.page_view_count == 1


class SeenBeforeStore:
    """
    Persisted "this visitor has been here before" flag.

    File-backed when a path is given, otherwise held in memory for the
    lifetime of the store.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path).expanduser() if path else None
        self._seen = False

    def seen(self) -> bool:
        if self.path is not None:
            return self.path.exists()
        return self._seen

    def mark(self) -> None:
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("true")
        self._seen = True
