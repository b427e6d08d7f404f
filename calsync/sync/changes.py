"""
Applies provider change notifications to the local CalendarEvent mirror

Shared by webhook processing and scheduled pulls. Each change is applied and
committed under the (integration, external event) concurrency guard.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from calsync.models import CalendarEvent
from calsync.schemas.calendar_events import ChangeNotification, ChangeType, Conflict, ResolutionStrategy
from calsync.sync.concurrency import GuardBusy, event_key
from calsync.sync.conflicts import ConflictDetector, ConflictResolver
from calsync.sync.errors import JobTimeout, RateLimitExceeded, ReleaseJob
from calsync.sync.normalizer import normalize_event

logger = logging.getLogger(__name__)

GUARD_WAIT_SECONDS = 10
GUARD_RELEASE_DELAY = 15


class ChangeProcessor:
    def __init__(self, db, ctx, integration, job):
        self.db = db
        self.ctx = ctx
        self.integration = integration
        self.job = job
        self.adapter = ctx.registry.get(integration.provider)
        self.detector = ConflictDetector(db)
        self.stats = {"created": 0, "updated": 0, "deleted": 0, "skipped": 0, "processed": 0}
        self.errors: List[Dict[str, str]] = []
        self.conflicts: List[Conflict] = []

    def process(self, changes: Iterable[ChangeNotification]) -> Dict:
        for change in changes:
            key = event_key(self.integration.id, change.external_id)
            try:
                with self.ctx.guard.hold(key, blocking=True, timeout=GUARD_WAIT_SECONDS):
                    self._apply(change)
                    self.db.commit()
            except GuardBusy:
                raise ReleaseJob(GUARD_RELEASE_DELAY, f"event {change.external_id} is busy", consume_attempt=False)
            except (ReleaseJob, RateLimitExceeded, JobTimeout):
                raise
            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ Failed to apply {change.change_type.value} for {change.external_id}: {e}")
                self.errors.append({"external_event_id": change.external_id, "error": str(e)})
                continue
            self.stats["processed"] += 1
        return self.summary()

    def summary(self) -> Dict:
        return {
            **self.stats,
            "errors": list(self.errors),
            "conflicts": [conflict.model_dump(mode="json") for conflict in self.conflicts],
        }

    def _mirror(self, external_id: str) -> Optional[CalendarEvent]:
        return (
            self.db.query(CalendarEvent)
            .filter_by(calendar_integration_id=self.integration.id, external_event_id=external_id)
            .first()
        )

    def _apply(self, change: ChangeNotification):
        if change.change_type in (ChangeType.DELETED, ChangeType.CANCELLED):
            self._remove(change.external_id)
            return

        data = change.data
        if not data or "start" not in data:
            data = self.job.call_provider(
                self.ctx, self.integration, self.adapter.get_event, self.integration, change.external_id
            )
            if data is None:
                # Gone before we could read it
                self._remove(change.external_id)
                return
        self._upsert(normalize_event(data, change.external_id))

    def _upsert(self, event):
        now = self.ctx.clock()
        mirror = self._mirror(event.external_id)
        if mirror is None:
            mirror = CalendarEvent(calendar_integration_id=self.integration.id, external_event_id=event.external_id)
            self.db.add(mirror)
            self.stats["created"] += 1
        else:
            self.stats["updated"] += 1

        mirror.title = event.title
        mirror.description = event.description
        mirror.starts_at = event.starts_at
        mirror.ends_at = event.ends_at
        mirror.is_all_day = event.is_all_day
        mirror.blocks_booking = event.blocks_booking
        mirror.synced_at = now
        mirror.last_updated_externally = now
        self.db.flush()

        if event.blocks_booking and self.integration.auto_block_external_events:
            found = self.detector.detect(event, self.integration)
            # An event we pushed for a booking never conflicts with that booking
            own_booking = str(mirror.booking_id) if mirror.booking_id else None
            self.conflicts.extend(c for c in found if c.booking_id != own_booking)

    def _remove(self, external_id: str):
        self.detector.resolve_for_removed_event(self.integration, external_id)
        self.conflicts = [c for c in self.conflicts if c.external_event_id != external_id]
        mirror = self._mirror(external_id)
        if mirror is None:
            self.stats["skipped"] += 1
            return
        self.db.delete(mirror)
        self.stats["deleted"] += 1

    def remove_missing(self, seen_ids: Iterable[str], window_start: datetime, window_end: datetime) -> int:
        """Drop mirrors of external events that vanished from a full snapshot"""
        seen = set(seen_ids)
        stale = (
            self.db.query(CalendarEvent)
            .filter(CalendarEvent.calendar_integration_id == self.integration.id)
            .filter(CalendarEvent.booking_id.is_(None))
            .filter(CalendarEvent.starts_at < window_end)
            .filter(CalendarEvent.ends_at > window_start)
            .all()
        )
        removed = 0
        for mirror in stale:
            if mirror.external_event_id in seen:
                continue
            self.detector.resolve_for_removed_event(self.integration, mirror.external_event_id)
            self.db.delete(mirror)
            removed += 1
        self.stats["deleted"] += removed
        return removed

    def resolve_conflicts(self) -> List[str]:
        """Run the integration's strategy once per collected conflict"""
        if not self.conflicts:
            return []
        # The same event can change more than once in a batch; the last version wins
        latest = {(c.booking_id, c.external_event_id): c for c in self.conflicts}
        self.conflicts = list(latest.values())

        resolver = ConflictResolver(self.db, self.ctx.booking_service, self.ctx.notifier, self.ctx.clock)
        actions = []
        for conflict in self.conflicts:
            try:
                actions.append(resolver.resolve(conflict, self.integration))
            except Exception as e:
                logger.error(f"❌ Resolving conflict for booking {conflict.booking_id} failed: {e}")
                actions.append("error")

        # notify_only has already sent one notice per conflict
        notified = self.integration.conflict_resolution == ResolutionStrategy.NOTIFY_ONLY.value
        if not notified and self.integration.wants_notification("notify_on_conflicts"):
            self.ctx.notifier.notify(
                "conflict", self.integration,
                conflicts=[conflict.model_dump(mode="json") for conflict in self.conflicts],
            )
        return actions
