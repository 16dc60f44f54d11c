"""
Tests for the activity log API.

Identity comes from the X-Actor-Id / X-Actor-Role headers, as
the upstream identity collaborator would send them.
"""

from datetime import timedelta

from activity_audit.models.enums import ActivityKind, ActivityStatus, EntityType

USER = {"X-Actor-Id": "user-1"}
OTHER = {"X-Actor-Id": "user-2"}
ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}


# --- Identity ---

def test_missing_actor_is_unauthorized(client):
    assert client.get("/activity-logs").status_code == 401


def test_unknown_role_is_unauthorized(client):
    response = client.get("/activity-logs", headers={"X-Actor-Id": "x", "X-Actor-Role": "root"})
    assert response.status_code == 401


# --- Timelines ---

def test_user_timeline(client, make_record, clock):
    make_record(kind=ActivityKind.USER_LOGIN)
    clock.advance(seconds=5)
    make_record(kind=ActivityKind.ACCOUNT_VIEW)
    make_record(actor_id="user-2")

    response = client.get("/activity-logs", headers=USER)

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["currentPage"] == 1
    assert data["totalPages"] == 1
    assert data["hasNext"] is False
    assert data["hasPrev"] is False
    assert [item["activityKind"] for item in data["items"]] == ["ACCOUNT_VIEW", "USER_LOGIN"]


def test_record_shape(client, make_record):
    make_record(
        status=ActivityStatus.FAILURE,
        error_code="ACCOUNT_LOCKED",
        error_message="locked",
        duration_ms=12.5,
        target_entity_type=EntityType.ACCOUNT,
        target_entity_id="acc-1",
        before_state={"name": "a"},
        changes=[{"field": "name", "old_value": "a", "new_value": "b"}],
    )

    item = client.get("/activity-logs", headers=USER).json()["items"][0]

    assert item["status"] == "FAILURE"
    assert item["error"] == {"code": "ACCOUNT_LOCKED", "message": "locked", "detail": None}
    assert item["performance"]["durationMs"] == 12.5
    assert item["target"]["entityType"] == "Account"
    assert item["details"]["changes"][0]["field"] == "name"
    assert item["security"] == {"riskScore": 0, "flagged": False, "reasons": []}
    assert item["retention"]["permanent"] is False


def test_success_record_has_no_error(client, make_record):
    make_record()
    item = client.get("/activity-logs", headers=USER).json()["items"][0]
    assert item["error"] is None
    assert item["performance"] is None


def test_invalid_pagination_is_400(client):
    assert client.get("/activity-logs?page=0", headers=USER).status_code == 400
    assert client.get("/activity-logs?limit=101", headers=USER).status_code == 400


def test_filter_by_kind(client, make_record):
    make_record(kind=ActivityKind.USER_LOGIN)
    make_record(kind=ActivityKind.USER_LOGOUT)

    data = client.get("/activity-logs?activityKind=USER_LOGOUT", headers=USER).json()

    assert data["total"] == 1


def test_user_cannot_read_other_timeline(client):
    response = client.get("/activity-logs?actorId=user-2", headers=USER)
    assert response.status_code == 403


def test_admin_reads_other_timeline(client, make_record):
    make_record(actor_id="user-2")
    data = client.get("/activity-logs?actorId=user-2", headers=ADMIN).json()
    assert data["total"] == 1


def test_account_timeline(client, make_record):
    make_record(target_entity_type=EntityType.ACCOUNT, target_entity_id="acc-7")
    make_record(actor_id="user-2", target_entity_type=EntityType.ACCOUNT, target_entity_id="acc-7")

    assert client.get("/activity-logs/account/acc-7", headers=USER).json()["total"] == 1
    assert client.get("/activity-logs/account/acc-7", headers=ADMIN).json()["total"] == 2


def test_target_timeline(client, make_record):
    make_record(target_entity_type=EntityType.PLATFORM, target_entity_id="web")

    response = client.get("/activity-logs/targets/Platform/web", headers=USER)

    assert response.status_code == 200
    assert response.json()["total"] == 1


def test_get_record(client, make_record):
    record_id = str(make_record().id)

    assert client.get(f"/activity-logs/{record_id}", headers=USER).json()["id"] == record_id
    assert client.get(f"/activity-logs/{record_id}", headers=OTHER).status_code == 404


# --- Statistics ---

def test_statistics(client, make_record):
    make_record(kind=ActivityKind.USER_LOGIN)
    make_record(kind=ActivityKind.USER_LOGIN, status=ActivityStatus.FAILURE, error_message="bad")

    response = client.get("/activity-logs/statistics?timeRange=7d", headers=USER)

    assert response.status_code == 200
    data = response.json()
    assert data["timeRange"] == "7d"
    assert data["totalActivities"] == 2
    assert data["kindStats"][0]["activityKind"] == "USER_LOGIN"
    assert data["degraded"] is False


def test_statistics_bad_range(client):
    response = client.get("/activity-logs/statistics?timeRange=forever", headers=USER)
    assert response.status_code == 400


# --- Admin ---

def test_admin_surfaces_reject_users(client):
    for path in (
        "/activity-logs/admin/recent",
        "/activity-logs/admin/security",
        "/activity-logs/admin/export",
    ):
        assert client.get(path, headers=USER).status_code == 403, path


def test_recent(client, make_record):
    make_record(actor_id="a")
    make_record(actor_id="b")
    assert client.get("/activity-logs/admin/recent", headers=ADMIN).json()["total"] == 2


def test_security_listing(client, make_record):
    make_record(risk_score=80, flagged=True, security_reasons=["RAPID_CREATION"])
    make_record(risk_score=10)

    data = client.get("/activity-logs/admin/security", headers=ADMIN).json()

    assert data["total"] == 1
    assert data["items"][0]["security"]["reasons"] == ["RAPID_CREATION"]
    assert data["degraded"] is False


def test_security_listing_min_score(client, make_record):
    make_record(risk_score=50)
    data = client.get("/activity-logs/admin/security?minRiskScore=40", headers=ADMIN).json()
    assert data["total"] == 1


def test_export_json(client, make_record, clock):
    make_record(occurred_at=clock() - timedelta(days=3))
    make_record()

    data = client.get(
        "/activity-logs/admin/export",
        params={"startDate": (clock() - timedelta(days=1)).isoformat()},
        headers=ADMIN,
    ).json()

    assert data["total"] == 1
    assert data["truncated"] is False
    assert data["items"][0]["actor_id"] == "user-1"


def test_export_csv(client, make_record, settings):
    settings.EXPORT_ROW_CAP = 1
    make_record()
    make_record()

    response = client.get("/activity-logs/admin/export?format=csv", headers=ADMIN)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["X-Export-Truncated"] == "true"
    assert response.headers["X-Export-Total"] == "2"
    assert len(response.text.strip().splitlines()) == 2


def test_flag_record(client, make_record, store):
    record_id = make_record().id

    response = client.post(
        f"/activity-logs/admin/{record_id}/flag",
        json={"reasons": ["SUSPICIOUS_LOCATION"]},
        headers=ADMIN,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["riskScore"] == 80
    assert data["flagged"] is True
    assert data["permanent"] is True
    assert store.get(record_id).permanent is True


def test_flag_requires_admin(client, make_record):
    record_id = make_record().id
    response = client.post(
        f"/activity-logs/admin/{record_id}/flag",
        json={"reasons": ["X"]},
        headers=USER,
    )
    assert response.status_code == 403


def test_flag_unknown_record(client):
    response = client.post(
        "/activity-logs/admin/00000000-0000-0000-0000-000000000000/flag",
        json={"reasons": ["X"]},
        headers=ADMIN,
    )
    assert response.status_code == 404


# --- Wire format ---

def test_paginated_response_keys_are_camel_case(client, make_record):
    make_record()

    data = client.get("/activity-logs", headers=USER).json()

    assert set(data) == {"items", "totalPages", "currentPage", "total", "hasNext", "hasPrev"}
    item = data["items"][0]
    assert {"activityKind", "actorId", "requestContext", "completedAt"} <= set(item)
    assert "occurredAt" in item["requestContext"]
    assert "expiresAt" in item["retention"]


def test_security_listing_keys_and_min_risk_score(client, make_record):
    make_record(risk_score=45)
    make_record(risk_score=20)

    data = client.get("/activity-logs/admin/security?minRiskScore=40", headers=ADMIN).json()

    assert data["total"] == 1
    assert data["totalPages"] == 1
    assert data["items"][0]["security"]["riskScore"] == 45


def test_flag_accepts_camel_case_and_always_flags(client, make_record):
    record_id = make_record().id

    data = client.post(
        f"/activity-logs/admin/{record_id}/flag",
        json={"reasons": ["phishing"], "riskScore": 50},
        headers=ADMIN,
    ).json()

    assert data["recordId"] == str(record_id)
    assert data["riskScore"] == 50
    assert data["flagged"] is True
    assert data["permanent"] is True
