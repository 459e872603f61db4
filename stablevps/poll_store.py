"""
StableVPS Provisioning Poll Store
=================================

Durable provisioning-poll cursors and the background runner that
drives them.

Every order enqueues one cursor (instance ID, attempt count, next poll
time, deadline). Cursors are written as JSON files under
`poll_store_path` so a restart resumes polling where it stopped instead
of abandoning instances in `provisioning`. The runner is idempotent: a
cursor is polled at most once per run and only when it is due.
"""

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .poller import PollOutcome, ProvisioningPoller
from .providers.base import ProviderError, VPSProviderInterface
from .store import DocumentStore

logger = logging.getLogger(__name__)


# Cursor states
PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
TIMEOUT = "timeout"
SKIPPED = "skipped"

TERMINAL_STATES = (COMPLETED, FAILED, TIMEOUT, SKIPPED)


@dataclass
class PollCursor:
    instance_id: str
    provider: str
    user_id: str
    service_id: str
    max_attempts: int
    next_poll_at: float
    deadline: float
    cursor_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    state: str = PENDING
    last_status: str = ""
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_due(self, now: float) -> bool:
        return self.state == PENDING and self.next_poll_at <= now

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "PollCursor":
        return cls(**data)


class PollStore:
    """
    Thread-safe cursor store.

    With a `path`, each cursor is persisted as `<cursor_id>.json` and all
    cursors found there are loaded on startup. Without one the store is
    memory-only (tests, local development).
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._cursors: Dict[str, PollCursor] = {}
        self._lock = threading.Lock()

        if self.path:
            os.makedirs(self.path, exist_ok=True)
            self._load()

    def _load(self) -> None:
        for name in sorted(os.listdir(self.path)):
            if not name.endswith(".json"):
                continue
            file_path = os.path.join(self.path, name)
            try:
                with open(file_path) as f:
                    cursor = PollCursor.from_dict(json.load(f))
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"Skipping unreadable poll cursor {file_path}: {e}")
                continue
            self._cursors[cursor.cursor_id] = cursor

        pending = sum(1 for c in self._cursors.values() if not c.is_terminal)
        logger.info(f"Loaded {len(self._cursors)} poll cursors ({pending} pending) from {self.path}")

    def _persist(self, cursor: PollCursor) -> None:
        if not self.path:
            return
        file_path = os.path.join(self.path, f"{cursor.cursor_id}.json")
        tmp_path = f"{file_path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(cursor.to_dict(), f)
        os.replace(tmp_path, file_path)

    def enqueue(
        self,
        instance_id: str,
        provider: str,
        user_id: str,
        service_id: str,
        interval_seconds: float = 15.0,
        max_attempts: int = 60,
        now: Optional[float] = None,
    ) -> PollCursor:
        """Start tracking a freshly ordered instance. First poll is one interval out."""
        now = time.time() if now is None else now
        cursor = PollCursor(
            instance_id=instance_id,
            provider=provider,
            user_id=user_id,
            service_id=service_id,
            max_attempts=max_attempts,
            next_poll_at=now + interval_seconds,
            deadline=now + interval_seconds * (max_attempts + 1),
        )
        with self._lock:
            self._cursors[cursor.cursor_id] = cursor
            self._persist(cursor)

        logger.info(
            f"Enqueued provisioning poll for {instance_id}",
            extra={"instance_id": instance_id, "user_id": user_id, "provider": provider},
        )
        return PollCursor.from_dict(cursor.to_dict())

    def get(self, cursor_id: str) -> Optional[PollCursor]:
        with self._lock:
            cursor = self._cursors.get(cursor_id)
            return PollCursor.from_dict(cursor.to_dict()) if cursor else None

    def save(self, cursor: PollCursor) -> None:
        cursor.updated_at = datetime.utcnow().isoformat()
        with self._lock:
            self._cursors[cursor.cursor_id] = PollCursor.from_dict(cursor.to_dict())
            self._persist(cursor)

    def due(self, now: Optional[float] = None) -> List[PollCursor]:
        """Pending cursors whose next poll time has passed, oldest first."""
        now = time.time() if now is None else now
        with self._lock:
            cursors = [
                PollCursor.from_dict(c.to_dict())
                for c in self._cursors.values()
                if c.is_due(now)
            ]
        return sorted(cursors, key=lambda c: c.next_poll_at)

    def list_cursors(self, state: Optional[str] = None) -> List[PollCursor]:
        with self._lock:
            return [
                PollCursor.from_dict(c.to_dict())
                for c in self._cursors.values()
                if state is None or c.state == state
            ]


class PollRunner:
    """
    Processes due cursors.

    `resolve_provider(provider_id)` returns the adapter a cursor was
    created with; cursors outlive configuration changes, so a cursor for
    a provider that can no longer be built stays pending.
    """

    def __init__(
        self,
        store: DocumentStore,
        poll_store: PollStore,
        resolve_provider: Callable[[str], VPSProviderInterface],
        interval_seconds: float = 15.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.poll_store = poll_store
        self.resolve_provider = resolve_provider
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def run_due(self, now: Optional[float] = None) -> Dict[str, int]:
        """
        Poll every due cursor once.

        Returns:
            Count of cursors per resulting state
        """
        now = self._clock() if now is None else now
        summary: Dict[str, int] = {}

        # One run at a time; a slow provider must not double-poll a cursor
        with self._lock:
            for cursor in self.poll_store.due(now):
                try:
                    state = self._process(cursor, now)
                except Exception as e:
                    state = self._reschedule_after_error(cursor, now, e)
                summary[state] = summary.get(state, 0) + 1

        if summary:
            logger.info(f"Poll run finished: {summary}")
        return summary

    def _process(self, cursor: PollCursor, now: float) -> str:
        try:
            provider = self.resolve_provider(cursor.provider)
        except ProviderError as e:
            logger.error(f"Cannot poll {cursor.instance_id}: {e}", extra={"instance_id": cursor.instance_id})
            cursor.next_poll_at = now + self.interval_seconds
            self.poll_store.save(cursor)
            return cursor.state

        outcome, details = ProvisioningPoller(provider).check(cursor.instance_id)
        cursor.attempts += 1
        if details is not None:
            cursor.last_status = details.status.value

        if outcome == PollOutcome.ACTIVE:
            self.store.apply_instance_details(cursor.user_id, cursor.service_id, details)
            cursor.state = COMPLETED
            logger.info(
                f"VPS {cursor.instance_id} is active at {details.ipv4}",
                extra={"instance_id": cursor.instance_id, "user_id": cursor.user_id},
            )
        elif outcome == PollOutcome.FAILED:
            self.store.update_service(cursor.user_id, cursor.service_id, vps_status="failed")
            cursor.state = FAILED
            logger.error(f"VPS {cursor.instance_id} failed to provision", extra={"instance_id": cursor.instance_id})
        elif outcome == PollOutcome.SKIPPED:
            cursor.state = SKIPPED
            logger.info(f"Not polling {cursor.instance_id} ({cursor.last_status})")
        elif cursor.attempts >= cursor.max_attempts or now >= cursor.deadline:
            cursor.state = TIMEOUT
            logger.warning(
                f"Polling timeout for {cursor.instance_id} after {cursor.attempts} attempts",
                extra={"instance_id": cursor.instance_id},
            )
        else:
            cursor.next_poll_at = now + self.interval_seconds

        self.poll_store.save(cursor)
        return cursor.state

    def _reschedule_after_error(self, cursor: PollCursor, now: float, error: Exception) -> str:
        """Count the attempt and move on so one bad cursor cannot stall the rest."""
        logger.error(
            f"Poll of {cursor.instance_id} failed: {error!r}",
            extra={"instance_id": cursor.instance_id, "user_id": cursor.user_id},
            exc_info=True,
        )
        stored = self.poll_store.get(cursor.cursor_id) or cursor
        stored.attempts += 1
        if stored.attempts >= stored.max_attempts or now >= stored.deadline:
            stored.state = TIMEOUT
        else:
            stored.next_poll_at = now + self.interval_seconds
        self.poll_store.save(stored)
        return stored.state
