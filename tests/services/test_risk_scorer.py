"""
Tests for the risk scorer.

Tests cover:
- Each detector in isolation, at and above its threshold
- The rapid-creation scenario end to end
- Rescoring recent actors
- Operator security events
"""

from types import SimpleNamespace
import uuid

import pytest

from activity_audit.errors import RecordNotFound
from activity_audit.models.enums import ActivityKind, ActivityStatus
from activity_audit.schemas.activity import OperationDescriptor, RequestContext
from activity_audit.services.risk_scorer import (
    MULTIPLE_FAILURES,
    MULTIPLE_SOURCES,
    RAPID_CREATION,
    RiskScorer,
    detect_address_churn,
    detect_failure_cluster,
    detect_rapid_creation,
)


def fake(kind=ActivityKind.ACCOUNT_CREATE, status=ActivityStatus.SUCCESS, source="10.0.0.1"):
    return SimpleNamespace(activity_kind=kind, status=status, source_address=source)


def create_descriptor(actor_id="user-1", source="10.0.0.1"):
    return OperationDescriptor(
        kind=ActivityKind.ACCOUNT_CREATE,
        actor_id=actor_id,
        request=RequestContext(source_address=source),
    )


# --- Detectors ---

class TestDetectors:

    def test_rapid_creation_needs_more_than_threshold(self):
        assert detect_rapid_creation([fake()] * 5, threshold=5, score=70) is None

        finding = detect_rapid_creation([fake()] * 6, threshold=5, score=70)
        assert finding.kind == RAPID_CREATION
        assert finding.count == 6
        assert finding.risk_score == 70

    def test_rapid_creation_counts_auto_creation(self):
        records = [fake()] * 3 + [fake(kind=ActivityKind.ACCOUNT_AUTO_CREATE)] * 3
        assert detect_rapid_creation(records, threshold=5, score=70).count == 6

    def test_rapid_creation_ignores_other_kinds(self):
        records = [fake(kind=ActivityKind.ACCOUNT_UPDATE)] * 10
        assert detect_rapid_creation(records, threshold=5, score=70) is None

    def test_failure_cluster(self):
        failures = [fake(kind=ActivityKind.USER_LOGIN, status=ActivityStatus.FAILURE)]
        assert detect_failure_cluster(failures * 10, threshold=10, score=60) is None

        finding = detect_failure_cluster(failures * 11, threshold=10, score=60)
        assert finding.kind == MULTIPLE_FAILURES
        assert finding.count == 11
        assert finding.risk_score == 60

    def test_address_churn_counts_distinct_addresses(self):
        same = [fake(source="10.0.0.1")] * 10
        assert detect_address_churn(same, threshold=3, score=50) is None

        many = [fake(source=f"10.0.0.{i}") for i in range(4)] + [fake(source=None)]
        finding = detect_address_churn(many, threshold=3, score=50)
        assert finding.kind == MULTIPLE_SOURCES
        assert finding.count == 4


# --- Scenarios ---

class TestRapidCreationScenario:

    def test_sixth_creation_onward_is_flagged(self, interceptor, store, clock):
        """
        Six account creations inside five minutes: the sixth record
        carries RAPID_CREATION at 70 and is flagged; the first five
        are untouched.
        """
        record_ids = []
        for _ in range(7):
            with interceptor.track(create_descriptor()) as op:
                record_ids.append(op.record_id)
            clock.advance(seconds=30)

        records = [store.get(rid) for rid in record_ids]

        for record in records[:5]:
            assert record.risk_score == 0
            assert record.flagged is False
            assert record.security_reasons == []
        for record in records[5:]:
            assert record.security_reasons == [RAPID_CREATION]
            assert record.risk_score == 70
            assert record.flagged is True
            assert record.permanent is True

    def test_creations_spread_out_are_not_flagged(self, interceptor, store, clock):
        record_ids = []
        for _ in range(8):
            with interceptor.track(create_descriptor()) as op:
                record_ids.append(op.record_id)
            clock.advance(minutes=2)

        assert all(store.get(rid).flagged is False for rid in record_ids)

    def test_other_actors_do_not_count(self, interceptor, store, clock):
        for i in range(5):
            with interceptor.track(create_descriptor(actor_id=f"other-{i}")):
                pass
        with interceptor.track(create_descriptor()) as op:
            pass

        assert store.get(op.record_id).flagged is False


class TestScoreActor:

    def test_reports_findings_without_writing(self, store, settings, clock):
        ids = [store.create_pending(create_descriptor(source=f"10.0.0.{i}")) for i in range(6)]
        scorer = RiskScorer(store, settings, clock)

        kinds = {f.kind for f in scorer.score_actor("user-1")}

        assert kinds == {RAPID_CREATION, MULTIPLE_SOURCES}
        assert all(store.get(rid).risk_score == 0 for rid in ids)

    def test_thresholds_come_from_settings(self, store, settings, clock):
        settings.RISK_RAPID_CREATION_THRESHOLD = 1
        for _ in range(2):
            store.create_pending(create_descriptor())
        scorer = RiskScorer(store, settings, clock)
        assert [f.kind for f in scorer.score_actor("user-1")] == [RAPID_CREATION]


class TestRescoreRecent:

    def test_applies_findings_to_latest_record(self, store, settings, clock):
        ids = []
        for _ in range(6):
            ids.append(store.create_pending(create_descriptor()))
            clock.advance(seconds=10)
        store.create_pending(create_descriptor(actor_id="quiet"))
        scorer = RiskScorer(store, settings, clock)

        assert scorer.rescore_recent() == 1
        assert store.get(ids[-1]).flagged is True
        assert store.get(ids[0]).flagged is False

    def test_rescoring_twice_is_stable(self, store, settings, clock):
        for _ in range(6):
            last = store.create_pending(create_descriptor())
            clock.advance(seconds=1)
        scorer = RiskScorer(store, settings, clock)

        scorer.rescore_recent()
        scorer.rescore_recent()

        record = store.get(last)
        assert record.risk_score == 70
        assert record.security_reasons == [RAPID_CREATION]


class TestMarkSecurityEvent:

    def test_marks_record_permanent(self, store, settings, clock):
        record_id = store.create_pending(create_descriptor())
        scorer = RiskScorer(store, settings, clock)

        state = scorer.mark_security_event(record_id, ["SUSPICIOUS_LOCATION"])

        assert state.risk_score == 80
        assert state.flagged is True
        assert state.permanent is True
        assert state.reasons == ["SUSPICIOUS_LOCATION"]

    def test_never_lowers_an_existing_score(self, store, settings, clock):
        record_id = store.create_pending(create_descriptor())
        store.merge_security(record_id, 95, ["MANUAL_REVIEW"])
        scorer = RiskScorer(store, settings, clock)

        state = scorer.mark_security_event(record_id, ["SECOND_LOOK"], risk_score=60)

        assert state.risk_score == 95
        assert state.reasons == ["MANUAL_REVIEW", "SECOND_LOOK"]

    def test_low_score_still_flags_and_keeps_record(self, store, settings, clock):
        record_id = store.create_pending(create_descriptor())
        scorer = RiskScorer(store, settings, clock)

        state = scorer.mark_security_event(record_id, ["phishing"], risk_score=50)

        assert state.risk_score == 50
        assert state.flagged is True
        assert state.permanent is True
        assert store.get(record_id).permanent is True

    def test_unknown_record(self, store, settings, clock):
        scorer = RiskScorer(store, settings, clock)
        with pytest.raises(RecordNotFound):
            scorer.mark_security_event(uuid.uuid4(), ["X"])
