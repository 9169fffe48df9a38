import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

from app.moderation.domain import container
from app.moderation.domain.content import ContentItem
from app.moderation.domain.rbac import Role
from app.moderation.domain.reports import TargetType
from app.moderation.domain.sanctions import UserModerationState
from app.settings import settings


def _headers(user_id: str, role: str | None = None, **extra: str) -> dict[str, str]:
	headers = {"X-User-Id": user_id}
	if role:
		headers["X-User-Roles"] = role
	headers.update(extra)
	return headers


def _seed_user(user_id: str, role: Role = Role.USER, **fields) -> UserModerationState:
	return container.get_user_repository().put(UserModerationState(user_id=user_id, role=role, **fields))


def _seed_post(post_id: str = "p1", author_id: str = "author-1", body: str = "Buy cheap followers now") -> None:
	container.get_content_store().put(
		ContentItem(content_type=TargetType.POST, content_id=post_id, author_id=author_id, body=body)
	)


MODO = _headers("modo-1", "modo")
ADMIN = _headers("admin-1", "admin_modo")


@pytest.fixture(autouse=True)
def staff_accounts(moderation_stores):
	_seed_user("modo-1", Role.MODO)
	_seed_user("admin-1", Role.ADMIN_MODO)
	_seed_user("author-1")
	_seed_post()


@pytest.mark.asyncio
async def test_report_is_created_then_aggregated(api_client):
	body = {"target_type": "post", "target_id": "p1", "reason": "spam", "details": "link farm"}

	first = await api_client.post("/api/mod/v1/reports", json=body, headers=_headers("r1"))
	assert first.status_code == 201
	payload = first.json()
	assert payload["created"] is True
	assert payload["report"]["priority"] == "low"
	assert payload["report"]["aggregate_count"] == 1

	second = await api_client.post("/api/mod/v1/reports", json=body, headers=_headers("r1"))
	assert second.status_code == 200
	assert second.json()["created"] is False
	assert second.json()["report"]["aggregate_count"] == 2
	assert second.json()["report"]["id"] == payload["report"]["id"]


@pytest.mark.asyncio
async def test_aggregate_count_follows_distinct_reporters(api_client):
	body = {"target_type": "post", "target_id": "p1", "reason": "spam"}

	counts = []
	for reporter in ("r1", "r2", "r3"):
		response = await api_client.post("/api/mod/v1/reports", json=body, headers=_headers(reporter))
		assert response.status_code == 201
		counts.append(response.json()["report"]["aggregate_count"])

	assert counts == [1, 2, 3]
	queue = await api_client.get("/api/mod/v1/admin/reports", headers=MODO)
	assert {item["aggregate_count"] for item in queue.json()["items"]} == {3}


@pytest.mark.asyncio
async def test_critical_report_is_escalated_on_arrival(api_client):
	response = await api_client.post(
		"/api/mod/v1/reports",
		json={"target_type": "post", "target_id": "p1", "reason": "violence"},
		headers=_headers("r1"),
	)

	assert response.status_code == 201
	payload = response.json()
	assert payload["escalated"] is True
	assert payload["report"]["priority"] == "critical"
	assert payload["report"]["escalated_at"] is not None


@pytest.mark.asyncio
async def test_invalid_report_returns_field_errors(api_client):
	response = await api_client.post(
		"/api/mod/v1/reports",
		json={"target_type": "photo", "target_id": "p1", "reason": "spam"},
		headers=_headers("r1", **{"X-Request-Id": "req-123"}),
	)

	assert response.status_code == 422
	payload = response.json()
	assert payload["detail"] == "validation_error"
	assert "target_type" in payload["fields"]
	assert payload["request_id"] == "req-123"


@pytest.mark.asyncio
async def test_report_rate_limit(api_client, monkeypatch):
	monkeypatch.setattr(settings, "moderation_report_rate_limit", 2)

	for target in ("p1", "p2"):
		response = await api_client.post(
			"/api/mod/v1/reports",
			json={"target_type": "post", "target_id": target, "reason": "spam"},
			headers=_headers("r9"),
		)
		assert response.status_code == 201

	blocked = await api_client.post(
		"/api/mod/v1/reports",
		json={"target_type": "post", "target_id": "p3", "reason": "spam"},
		headers=_headers("r9"),
	)
	assert blocked.status_code == 429
	assert blocked.json()["detail"] == "report_limit_exceeded"


@pytest.mark.asyncio
async def test_requests_without_identity_are_rejected(api_client):
	response = await api_client.post(
		"/api/mod/v1/reports",
		json={"target_type": "post", "target_id": "p1", "reason": "spam"},
	)
	assert response.status_code == 401


@pytest.mark.asyncio
async def test_banned_member_gets_machine_readable_code(api_client):
	_seed_user("r2", banned_at=datetime.now(timezone.utc), ban_reason="Fraud")

	response = await api_client.post(
		"/api/mod/v1/reports",
		json={"target_type": "post", "target_id": "p1", "reason": "spam"},
		headers=_headers("r2"),
	)

	assert response.status_code == 403
	assert response.json()["code"] == "ACCOUNT_BANNED"


@pytest.mark.asyncio
async def test_suspended_member_sees_expiry(api_client):
	until = datetime.now(timezone.utc) + timedelta(hours=3)
	_seed_user("r3", suspended_until=until, suspend_reason="Spam burst")

	response = await api_client.post(
		"/api/mod/v1/reports",
		json={"target_type": "post", "target_id": "p1", "reason": "spam"},
		headers=_headers("r3"),
	)

	assert response.status_code == 403
	payload = response.json()
	assert payload["code"] == "ACCOUNT_SUSPENDED"
	assert payload["suspended_until"] == until.isoformat()

	status_response = await api_client.get("/api/mod/v1/me/status", headers=_headers("r3"))
	assert status_response.status_code == 200
	assert status_response.json()["status"] == "suspended"
	assert status_response.json()["code"] == "ACCOUNT_SUSPENDED"


@pytest.mark.asyncio
async def test_banned_staff_cannot_use_their_permissions(api_client):
	_seed_user("admin-2", Role.ADMIN_MODO, banned_at=datetime.now(timezone.utc), ban_reason="Abuse of tools")

	response = await api_client.get("/api/mod/v1/admin/reports", headers=_headers("admin-2", "admin_modo"))

	assert response.status_code == 403
	assert response.json()["code"] == "ACCOUNT_BANNED"


@pytest.mark.asyncio
async def test_stored_role_overrides_token_role(api_client):
	response = await api_client.get("/api/mod/v1/admin/reports", headers=_headers("author-1", "super_admin"))

	assert response.status_code == 403
	assert response.json()["detail"] == "missing_permission"


@pytest.mark.asyncio
async def test_report_processing_flow(api_client):
	created = await api_client.post(
		"/api/mod/v1/reports",
		json={"target_type": "post", "target_id": "p1", "reason": "spam"},
		headers=_headers("r1"),
	)
	report_id = created.json()["report"]["id"]

	queue = await api_client.get("/api/mod/v1/admin/reports", params={"status": "pending"}, headers=MODO)
	assert queue.status_code == 200
	assert [item["id"] for item in queue.json()["items"]] == [report_id]

	processed = await api_client.post(
		f"/api/mod/v1/admin/reports/{report_id}/process",
		json={"action": "hide_content", "admin_note": "Clear spam"},
		headers=MODO,
	)
	assert processed.status_code == 200
	assert processed.json()["status"] == "action_taken"
	assert processed.json()["action"] == "hide_content"
	assert container.get_content_store().items[(TargetType.POST, "p1")].hidden

	detail = await api_client.get(f"/api/mod/v1/admin/reports/{report_id}", headers=MODO)
	actions = {entry["action"] for entry in detail.json()["history"]}
	assert actions == {"content:hide", "report:process"}

	again = await api_client.post(
		f"/api/mod/v1/admin/reports/{report_id}/process",
		json={"action": "none"},
		headers=MODO,
	)
	assert again.status_code == 409
	assert again.json()["detail"] == "report_already_processed"


@pytest.mark.asyncio
async def test_unknown_report_is_404(api_client):
	response = await api_client.get("/api/mod/v1/admin/reports/missing", headers=MODO)
	assert response.status_code == 404
	assert response.json()["detail"] == "report_not_found"


@pytest.mark.asyncio
async def test_escalate_and_assign(api_client):
	_seed_user("modo-2", Role.MODO)
	created = await api_client.post(
		"/api/mod/v1/reports",
		json={"target_type": "user", "target_id": "author-1", "reason": "false_info"},
		headers=_headers("r1"),
	)
	report_id = created.json()["report"]["id"]

	denied = await api_client.post(f"/api/mod/v1/admin/reports/{report_id}/escalate", json={}, headers=MODO)
	assert denied.status_code == 403

	# permission claims do not outlive the stored role
	claimed = await api_client.post(
		f"/api/mod/v1/admin/reports/{report_id}/escalate",
		json={},
		headers={**MODO, "X-User-Permissions": "reports:escalate"},
	)
	assert claimed.status_code == 403
	assert claimed.json()["detail"] == "missing_permission"

	escalated = await api_client.post(
		f"/api/mod/v1/admin/reports/{report_id}/escalate",
		json={"reason": "Part of a wider campaign"},
		headers={**ADMIN, "X-Forwarded-For": "203.0.113.9"},
	)
	assert escalated.status_code == 200
	assert escalated.json()["priority"] == "high"

	assigned = await api_client.post(
		f"/api/mod/v1/admin/reports/{report_id}/assign",
		json={"assignee_id": "modo-2"},
		headers={**MODO, "X-Forwarded-For": "198.51.100.4"},
	)
	assert assigned.json()["assigned_to"] == "modo-2"

	history = await api_client.get("/api/mod/v1/audit", params={"related_report_id": report_id}, headers=MODO)
	ips = {item["action"]: item["actor_ip"] for item in history.json()["items"]}
	assert ips["report:escalate"] == "203.0.113.9"
	assert ips["report:assign"] == "198.51.100.4"

	mine = await api_client.get(
		"/api/mod/v1/admin/reports",
		params={"assigned_to": "me", "escalated": "true"},
		headers=_headers("modo-2", "modo"),
	)
	assert [item["id"] for item in mine.json()["items"]] == [report_id]

	aggregated = await api_client.get("/api/mod/v1/admin/reports/aggregated", headers=MODO)
	assert aggregated.json()[0]["target_id"] == "author-1"
	assert aggregated.json()[0]["escalated"] is True

	stats = await api_client.get("/api/mod/v1/admin/reports/stats", headers=MODO)
	assert stats.json()["escalated_pending"] == 1


@pytest.mark.asyncio
async def test_sanction_lifecycle(api_client):
	warned = await api_client.post(
		"/api/mod/v1/users/author-1/warnings",
		json={"reason": "Posting spam links", "expires_in_days": 30},
		headers=MODO,
	)
	assert warned.status_code == 200
	assert len(warned.json()["user"]["warnings"]) == 1

	bad = await api_client.post(
		"/api/mod/v1/users/author-1/suspend",
		json={"reason": "Cooling off period", "hours": 5, "until": "2099-01-01T00:00:00Z"},
		headers=ADMIN,
	)
	assert bad.status_code == 422

	no_duration = await api_client.post(
		"/api/mod/v1/users/author-1/suspend",
		json={"reason": "Cooling off period"},
		headers=ADMIN,
	)
	assert no_duration.status_code == 422
	assert "until" in no_duration.json()["fields"]

	suspended = await api_client.post(
		"/api/mod/v1/users/author-1/suspend",
		json={"reason": "Cooling off period", "hours": 5},
		headers=ADMIN,
	)
	assert suspended.status_code == 200
	assert suspended.json()["user"]["suspended_until"] is not None

	banned = await api_client.post(
		"/api/mod/v1/users/author-1/ban",
		json={"reason": "repeated harassment"},
		headers=_headers("admin-1", "admin_modo", **{"X-Event-Id": "evt-ban-1"}),
	)
	assert banned.status_code == 200
	assert banned.json()["idempotent"] is False

	replay = await api_client.post(
		"/api/mod/v1/users/author-1/ban",
		json={"reason": "repeated harassment"},
		headers=_headers("admin-1", "admin_modo", **{"X-Event-Id": "evt-ban-1"}),
	)
	assert replay.status_code == 200
	assert replay.json()["idempotent"] is True

	status_response = await api_client.get("/api/mod/v1/me/status", headers=_headers("author-1"))
	assert status_response.json()["status"] == "banned"

	view = await api_client.get("/api/mod/v1/users/author-1", headers=MODO)
	assert view.json()["access"] == "banned"
	assert view.json()["risk"]["warning_count"] == 1

	again = await api_client.post(
		"/api/mod/v1/users/author-1/ban",
		json={"reason": "repeated harassment"},
		headers=ADMIN,
	)
	assert again.status_code == 409
	assert again.json()["detail"] == "user_already_banned"

	unbanned = await api_client.post("/api/mod/v1/users/author-1/unban", json={}, headers=ADMIN)
	assert unbanned.status_code == 200
	assert unbanned.json()["user"]["banned_at"] is None

	types = [n.type for n in container.get_notification_sink().notifications]
	assert types == ["sanction_warn", "sanction_suspend", "sanction_ban", "sanction_unban"]


@pytest.mark.asyncio
async def test_moderator_cannot_ban(api_client):
	response = await api_client.post(
		"/api/mod/v1/users/author-1/ban",
		json={"reason": "repeated harassment"},
		headers=MODO,
	)

	assert response.status_code == 403
	assert response.json()["detail"] == "missing_permission"


@pytest.mark.asyncio
async def test_unknown_user_is_404(api_client):
	response = await api_client.get("/api/mod/v1/users/ghost", headers=MODO)
	assert response.status_code == 404
	assert response.json()["detail"] == "user_not_found"


@pytest.mark.asyncio
async def test_audit_log_listing(api_client):
	await api_client.post("/api/mod/v1/users/author-1/warnings", json={"reason": "Posting spam links"}, headers=MODO)
	await api_client.post(
		"/api/mod/v1/users/author-1/surveillance",
		json={"active": True, "reason": "Linked accounts"},
		headers=ADMIN,
	)

	page = await api_client.get("/api/mod/v1/audit", params={"target_id": "author-1"}, headers=MODO)
	assert page.status_code == 200
	payload = page.json()
	assert payload["total"] == 2
	assert [item["action"] for item in payload["items"]] == ["user:surveillance_on", "user:warn"]

	entry_id = payload["items"][1]["id"]
	entry = await api_client.get(f"/api/mod/v1/audit/{entry_id}", headers=MODO)
	assert entry.json()["actor_id"] == "modo-1"
	assert entry.json()["snapshot"]["after"]["warning_count"] == 1

	missing = await api_client.get("/api/mod/v1/audit/nope", headers=MODO)
	assert missing.status_code == 404

	bad_filter = await api_client.get("/api/mod/v1/audit", params={"action": "user:explode"}, headers=MODO)
	assert bad_filter.status_code == 422


@pytest.mark.asyncio
async def test_audit_stats(api_client):
	await api_client.post("/api/mod/v1/users/author-1/warnings", json={"reason": "Posting spam links"}, headers=MODO)
	await api_client.post("/api/mod/v1/users/author-1/warnings", json={"reason": "More spam links"}, headers=MODO)
	await api_client.post(
		"/api/mod/v1/users/author-1/surveillance",
		json={"active": True, "reason": "Linked accounts"},
		headers=ADMIN,
	)

	response = await api_client.get("/api/mod/v1/audit/stats", params={"days": 7}, headers=MODO)

	assert response.status_code == 200
	payload = response.json()
	assert payload["days"] == 7
	assert payload["total"] == 3
	assert payload["by_action"] == {"user:warn": 2, "user:surveillance_on": 1}
	assert payload["top_actors"][0] == {"actor_id": "modo-1", "actor_role": "modo", "count": 2}
	today = datetime.now(timezone.utc).date().isoformat()
	assert payload["daily"] == [{"date": today, "count": 3}]

	no_window = await api_client.get("/api/mod/v1/audit/stats", params={"days": 0}, headers=MODO)
	assert no_window.status_code == 422


@pytest.mark.asyncio
async def test_audit_export_is_csv_and_needs_export_permission(api_client):
	await api_client.post("/api/mod/v1/users/author-1/warnings", json={"reason": "Posting, with \"quotes\""}, headers=MODO)
	await api_client.post(
		"/api/mod/v1/users/author-1/surveillance",
		json={"active": True, "reason": "Linked accounts"},
		headers=ADMIN,
	)

	denied = await api_client.get("/api/mod/v1/audit/export", headers=MODO)
	assert denied.status_code == 403

	response = await api_client.get("/api/mod/v1/audit/export", params={"action": "user:warn"}, headers=ADMIN)

	assert response.status_code == 200
	assert response.headers["content-type"].startswith("text/csv")
	assert "attachment" in response.headers["content-disposition"]
	rows = list(csv.reader(io.StringIO(response.text)))
	assert rows[0][:4] == ["created_at", "action", "actor_id", "actor_role"]
	assert len(rows) == 2
	assert rows[1][1:6] == ["user:warn", "modo-1", "modo", "user", "author-1"]
	assert rows[1][6] == 'Posting, with "quotes"'

	bad_filter = await api_client.get("/api/mod/v1/audit/export", params={"target_type": "planet"}, headers=ADMIN)
	assert bad_filter.status_code == 422


@pytest.mark.asyncio
async def test_dashboard_and_at_risk(api_client):
	await api_client.post("/api/mod/v1/users/author-1/warnings", json={"reason": "Posting spam links"}, headers=MODO)

	denied = await api_client.get("/api/mod/v1/dashboard", headers=MODO)
	assert denied.status_code == 403

	summary = await api_client.get("/api/mod/v1/dashboard", headers=ADMIN)
	assert summary.status_code == 200
	assert summary.json()["actions_today"] == 1
	assert summary.json()["users"]["total"] == 3

	at_risk = await api_client.get("/api/mod/v1/users/at-risk", headers=MODO)
	assert [entry["user_id"] for entry in at_risk.json()] == ["author-1"]
	assert at_risk.json()[0]["score"] == 8


@pytest.mark.asyncio
async def test_health_endpoints(api_client):
	live = await api_client.get("/health")
	assert live.json() == {"status": "ok"}

	ready = await api_client.get("/health/ready")
	assert ready.status_code == 200
	assert ready.json()["checks"]["postgres"]["mode"] == "in_memory"
