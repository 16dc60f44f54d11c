"""Audit pipeline services."""

from activity_audit.services.record_store import RecordStore
from activity_audit.services.risk_scorer import RiskScorer
from activity_audit.services.interceptor import ActivityInterceptor
from activity_audit.services.query_service import ActivityQueryService
from activity_audit.services.reaper import RetentionReaper

__all__ = [
    "RecordStore",
    "RiskScorer",
    "ActivityInterceptor",
    "ActivityQueryService",
    "RetentionReaper",
]
