"""
Risk scorer: sliding-window heuristics over one actor's records.

The detectors are plain functions over a list of records so they
can be tested without a database. RiskScorer loads the window,
runs the detectors, and applies what they find through
RecordStore.merge_security, which only ever raises a score.

Detectors:
- RAPID_CREATION: more than N account creations in the window
- MULTIPLE_FAILURES: more than N failed operations in the window
- MULTIPLE_SOURCES: more than N distinct source addresses in the window
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from activity_audit.clock import Clock, utc_now
from activity_audit.config import Settings, get_settings
from activity_audit.errors import RecordNotFound
from activity_audit.models.activity_record import ActivityRecord
from activity_audit.models.enums import ACCOUNT_CREATION_KINDS, ActivityStatus
from activity_audit.services.record_store import RecordStore, SecurityState

logger = logging.getLogger(__name__)

RAPID_CREATION = "RAPID_CREATION"
MULTIPLE_FAILURES = "MULTIPLE_FAILURES"
MULTIPLE_SOURCES = "MULTIPLE_SOURCES"
SLOW_OPERATION = "SLOW_OPERATION"
MANUAL_REVIEW = "MANUAL_REVIEW"


@dataclass(frozen=True)
class SecurityFinding:
    kind: str
    count: int
    risk_score: int


def detect_rapid_creation(
    records: Sequence[ActivityRecord], threshold: int, score: int
) -> SecurityFinding | None:
    count = sum(1 for r in records if r.activity_kind in ACCOUNT_CREATION_KINDS)
    if count > threshold:
        return SecurityFinding(RAPID_CREATION, count, score)
    return None


def detect_failure_cluster(
    records: Sequence[ActivityRecord], threshold: int, score: int
) -> SecurityFinding | None:
    count = sum(1 for r in records if r.status == ActivityStatus.FAILURE)
    if count > threshold:
        return SecurityFinding(MULTIPLE_FAILURES, count, score)
    return None


def detect_address_churn(
    records: Sequence[ActivityRecord], threshold: int, score: int
) -> SecurityFinding | None:
    addresses = {r.source_address for r in records if r.source_address}
    if len(addresses) > threshold:
        return SecurityFinding(MULTIPLE_SOURCES, len(addresses), score)
    return None


class RiskScorer:

    def __init__(
        self,
        store: RecordStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.settings.RISK_WINDOW_SECONDS)

    def evaluate(self, records: Sequence[ActivityRecord]) -> list[SecurityFinding]:
        """Run every detector over an already-loaded window."""
        s = self.settings
        candidates = [
            detect_rapid_creation(
                records, s.RISK_RAPID_CREATION_THRESHOLD, s.RISK_RAPID_CREATION_SCORE
            ),
            detect_failure_cluster(
                records, s.RISK_FAILURE_THRESHOLD, s.RISK_FAILURE_SCORE
            ),
            detect_address_churn(
                records, s.RISK_SOURCE_THRESHOLD, s.RISK_SOURCE_SCORE
            ),
        ]
        return [f for f in candidates if f is not None]

    def score_actor(
        self, actor_id: str, now: datetime | None = None
    ) -> list[SecurityFinding]:
        """Findings for the window ending at now. Nothing is written."""
        now = now or self.clock()
        records = self.store.actor_window(actor_id, now - self.window, now)
        return self.evaluate(records)

    def apply(
        self, record_id: uuid.UUID, findings: Sequence[SecurityFinding]
    ) -> SecurityState | None:
        if not findings:
            return None
        return self.store.merge_security(
            record_id,
            max(f.risk_score for f in findings),
            [f.kind for f in findings],
        )

    def score_record(self, record_id: uuid.UUID) -> SecurityState | None:
        """
        Score the window ending at a record and apply findings to it.

        The window is anchored on the record's own occurred_at, so
        records that came before the threshold was crossed stay
        clean even if they are scored later.
        """
        record = self.store.get(record_id)
        if record is None:
            return None
        records = self.store.actor_window(
            record.actor_id, record.occurred_at - self.window, record.occurred_at
        )
        findings = self.evaluate(records)
        if findings:
            logger.info(
                "Risk findings for actor %s on record %s: %s",
                record.actor_id, record_id, [f.kind for f in findings],
            )
        return self.apply(record_id, findings)

    def rescore_recent(self, now: datetime | None = None) -> int:
        """
        Score every actor active in the trailing window.

        Findings land on the actor's most recent record in the
        window. Returns how many records were updated.
        """
        now = now or self.clock()
        since = now - self.window
        updated = 0
        for actor_id in self.store.active_actors(since):
            records = self.store.actor_window(actor_id, since, now)
            findings = self.evaluate(records)
            if findings and records:
                self.apply(records[-1].id, findings)
                updated += 1
        return updated

    def mark_security_event(
        self,
        record_id: uuid.UUID,
        reasons: Sequence[str] = (MANUAL_REVIEW,),
        risk_score: int = 80,
    ) -> SecurityState:
        """
        Operator action: raise a record to a security event.

        The record is flagged and kept permanently whatever the score.
        """
        state = self.store.merge_security(
            record_id, risk_score, list(reasons), force_flag=True
        )
        if state is None:
            raise RecordNotFound(f"Activity record {record_id} not found")
        logger.warning(
            "Record %s marked as security event (risk_score=%d)",
            record_id, state.risk_score,
        )
        return state
