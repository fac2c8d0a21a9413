import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

from domain import AlertIntent, Notification, NotificationPreferences
from errors import DataUnavailableError
from repository import Found, LookupResult, Repository, StoreError

logger = logging.getLogger(__name__)


def _direct(fn, *args):
    return fn(*args)


@dataclass
class DispatchResult:
    created: List[Notification] = field(default_factory=list)
    skipped: int = 0
    suppressed: int = 0
    failures: List[Tuple[AlertIntent, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class NotificationDispatcher:
    """Persist alert intents as notifications, at most once per dedup key.

    The dedup key is ``(owner, type, subject_id, period_key)``; an unexpired
    notification with the same key turns the intent into a no-op. Store
    failures are reported per intent and never stop the remaining intents.
    Dedup lookups go through ``read``, which may retry them; writes are not
    retried.
    """

    def __init__(self, repository: Repository, clock, read: Callable = _direct):
        self.repository = repository
        self.clock = clock
        self.read = read

    def _lookup(self, owner: str, intent: AlertIntent, now) -> LookupResult:
        def find_notification():
            result = self.repository.find_notification(
                owner, intent.type, intent.subject_id, intent.period_key, now
            )
            if isinstance(result, StoreError):
                raise DataUnavailableError(result.reason)
            return result

        try:
            return self.read(find_notification)
        except DataUnavailableError as exc:
            return StoreError(str(exc))

    def dispatch(
        self,
        owner: str,
        intents: Iterable[AlertIntent],
        preferences: Optional[NotificationPreferences] = None,
    ) -> DispatchResult:
        result = DispatchResult()
        now = self.clock.now()
        seen = set()

        for intent in intents:
            key = intent.dedup_key(owner)
            if key in seen:
                result.skipped += 1
                continue
            seen.add(key)

            if preferences is not None and not preferences.allows(intent.type):
                result.suppressed += 1
                continue

            lookup = self._lookup(owner, intent, now)
            if isinstance(lookup, Found):
                logger.debug("Duplicate %s for %s prevented (%s)", intent.type, owner, key)
                result.skipped += 1
                continue
            if isinstance(lookup, StoreError):
                logger.error("Dedup lookup failed for %s: %s", key, lookup.reason)
                result.failures.append((intent, lookup.reason))
                continue

            notification = Notification(
                id=None,
                owner=owner,
                type=intent.type,
                title=intent.title,
                message=intent.message,
                subject_id=intent.subject_id,
                period_key=intent.period_key,
                payload=dict(intent.payload),
                created_at=now,
                read_at=None,
                action_url=intent.action_url,
                expires_at=intent.expires_at,
            )
            try:
                stored, created = self.repository.create_notification(notification)
            except DataUnavailableError as exc:
                logger.error("Failed to store %s for %s: %s", intent.type, owner, exc)
                result.failures.append((intent, str(exc)))
                continue
            if created:
                result.created.append(stored)
            else:
                logger.debug("Key %s already held by notification %s", key, stored.id)
                result.skipped += 1

        return result
