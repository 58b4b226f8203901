"""
API integration tests: response envelope, error shapes and cache invalidation.
"""

import inspect
import uuid
from datetime import date, datetime, timedelta

from johapon.main import notify_invitees, resolve_conflict_endpoint, send_notification
from johapon.models import MemberInvite
from johapon.schemas import UserStatus


def assert_error(response, status_code, code):
    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    assert body["error"]["message"]
    return body["error"]


class TestEnvelope:
    """Success and failure envelopes."""

    def test_health(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_share_ratio_preview(self, client):
        response = client.post("/api/share-ratio/preview", json={
            "mode": "proportional",
            "new_owner_ratio": 20,
            "other_co_owners": [{"owner_id": "a", "original_ratio": 30}],
        })

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["existing_ratio"] == 56
        assert data["co_owners"][0]["new_ratio"] == 24
        assert data["is_valid"] is True
        assert data["message"] is None

    def test_share_ratio_preview_warning(self, client):
        response = client.post("/api/share-ratio/preview", json={
            "mode": "manual", "new_owner_ratio": 50, "manual_existing_ratio": 70,
        })

        data = response.json()["data"]
        assert data["warning"] == "exceeds"
        assert data["is_valid"] is False
        assert "120" in data["message"]

    def test_not_found(self, client):
        assert_error(client.post("/api/members/approve", json={"user_id": str(uuid.uuid4())}), 404, "NOT_FOUND")

    def test_request_validation(self, client):
        error = assert_error(client.post("/api/members/reject", json={"user_id": "not-a-uuid"}), 422, "VALIDATION_ERROR")

        fields = {tuple(e["loc"]) for e in error["details"]["errors"]}
        assert ("body", "user_id") in fields
        assert ("body", "reason") in fields

    def test_invalid_state(self, client, make_member):
        owner = make_member("김철수", status=UserStatus.APPROVED)

        error = assert_error(
            client.post("/api/members/approve", json={"user_id": str(owner.id)}), 400, "INVALID_STATE",
        )
        assert "APPROVED" in error["message"]


class TestMembersApi:
    """Matching, pre-registration and approval routes."""

    def test_match_and_pre_register(self, client, union, land_lots):
        rows = [
            {"name": "김철수", "property_address": "미아동 791-1234", "dong": "101동"},
            {"name": "박민수", "property_address": "없는동 999-99"},
        ]

        matched = client.post(f"/api/unions/{union.id}/gis/match", json={"members": rows}).json()["data"]
        assert [r["matched"] for r in matched["items"]] == [True, False]
        assert matched["items"][0]["row"]["dong"] == "101"

        saved = client.post(f"/api/unions/{union.id}/gis/pre-register", json={"members": rows}).json()["data"]
        assert (saved["saved_count"], saved["matched_count"]) == (2, 1)

        listed = client.get(f"/api/unions/{union.id}/gis/pre-registered").json()["data"]["items"]
        assert {u["name"] for u in listed} == {"김철수", "박민수"}
        assert all(u["user_status"] == "PRE_REGISTERED" for u in listed)

        deleted = client.delete(f"/api/unions/{union.id}/gis/pre-registered").json()["data"]
        assert deleted == {"deleted_count": 2}

    def test_pre_register_unknown_union(self, client):
        response = client.post(
            f"/api/unions/{uuid.uuid4()}/gis/pre-register",
            json={"members": [{"name": "김철수", "property_address": "미아동 1"}]},
        )

        assert_error(response, 404, "NOT_FOUND")

    def test_manual_match_error(self, client, union, land_lots, make_member):
        user = make_member("박민수", status=UserStatus.PRE_REGISTERED, pnu=None)

        error = assert_error(client.post("/api/gis/manual-match", json={
            "user_id": str(user.id), "union_id": str(union.id), "property_address": "없는동 999-99",
        }), 400, "VALIDATION_ERROR")
        assert error["message"] == "Address not found in the union's parcel data"

    def test_conflict_flow(self, client, make_member):
        owner = make_member("김철수", ratio=100.0)
        pending = make_member("박민수", status=UserStatus.PENDING_APPROVAL, ratio=None)

        conflicts = client.get(f"/api/members/{pending.id}/conflicts").json()["data"]
        assert conflicts["has_conflict"] is True
        conflict = conflicts["conflicts"][0]

        response = client.post("/api/members/resolve-conflict", json={
            "action": "add_co_owner",
            "pending_user_id": str(pending.id),
            "existing_user_id": str(owner.id),
            "pending_unit_id": conflict["pending_unit_id"],
            "existing_unit_id": conflict["existing_unit_id"],
            "existing_ratio": 70,
            "new_ratio": 40,
        })
        error = assert_error(response, 400, "VALIDATION_ERROR")
        assert error["details"] == {"total": 110.0}

        response = client.post("/api/members/resolve-conflict", json={
            "action": "add_co_owner",
            "pending_user_id": str(pending.id),
            "existing_user_id": str(owner.id),
            "pending_unit_id": conflict["pending_unit_id"],
            "existing_unit_id": conflict["existing_unit_id"],
            "existing_ratio": 60,
            "new_ratio": 40,
        })
        assert response.status_code == 200
        assert response.json()["data"]["approved_user_id"] == str(pending.id)

        approved = client.get(f"/api/unions/{owner.union_id}/members?status=APPROVED").json()["data"]["items"]
        assert {u["name"] for u in approved} == {"김철수", "박민수"}

    def test_resolve_requires_action_fields(self, client):
        response = client.post("/api/members/resolve-conflict", json={
            "action": "add_proxy",
            "pending_user_id": str(uuid.uuid4()),
            "existing_user_id": str(uuid.uuid4()),
            "pending_unit_id": str(uuid.uuid4()),
            "existing_unit_id": str(uuid.uuid4()),
        })

        assert_error(response, 422, "VALIDATION_ERROR")


class TestInvitesApi:
    """Invite routes and the invite list cache."""

    def test_sync_list_and_cache_invalidation(self, client, db, union):
        roster = [
            {"name": "김철수", "phone_number": "010-1111-2222", "property_address": "미아동 791-1"},
            {"name": "이영희", "phone_number": "010-3333-4444", "property_address": "미아동 802-5"},
        ]
        result = client.post("/api/member-invite/sync", json={"union_id": str(union.id), "members": roster})
        assert result.json()["data"]["inserted"] == 2

        listed = client.get(f"/api/unions/{union.id}/member-invites").json()["data"]["items"]
        assert len(listed) == 2

        # Rows written outside the routes stay hidden until a write route clears the cache
        db.add(MemberInvite(
            union_id=union.id, name="최지우", phone_number="01077778888", property_address="미아동 1",
            invite_token="direct-insert", expires_at=datetime.utcnow() + timedelta(hours=24),
        ))
        db.commit()
        names = {i["name"] for i in client.get(f"/api/unions/{union.id}/member-invites").json()["data"]["items"]}
        assert names == {"김철수", "이영희"}

        deleted = next(i for i in listed if i["name"] == "김철수")
        client.delete(f"/api/member-invites/{deleted['id']}")
        names = {i["name"] for i in client.get(f"/api/unions/{union.id}/member-invites").json()["data"]["items"]}
        assert names == {"이영희", "최지우"}

    def test_token_lookup_and_accept(self, client, union, make_member):
        client.post("/api/member-invite/sync", json={"union_id": str(union.id), "members": [
            {"name": "김철수", "phone_number": "010-1111-2222", "property_address": "미아동 791-1"},
        ]})
        token = client.get(f"/api/unions/{union.id}/member-invites?status=pending").json()["data"]["items"][0]["invite_token"]

        invite = client.get(f"/api/member-invite/token/{token}").json()["data"]
        assert invite["status"] == "PENDING"
        assert invite["invite_link"].endswith(f"/member-invite/{token}")

        member = make_member("김철수")
        accepted = client.post("/api/member-invite/accept", json={"invite_token": token, "user_id": str(member.id)})
        assert accepted.json()["data"]["status"] == "USED"

        used = client.get(f"/api/unions/{union.id}/member-invites?status=used").json()["data"]["items"]
        assert [i["invite_token"] for i in used] == [token]

        assert_error(
            client.post("/api/member-invite/accept", json={"invite_token": token, "user_id": str(member.id)}),
            400, "INVALID_STATE",
        )

    def test_notify(self, client, union):
        client.post("/api/member-invite/sync", json={"union_id": str(union.id), "members": [
            {"name": "김철수", "phone_number": "010-1111-2222", "property_address": "미아동 791-1"},
        ]})

        data = client.post("/api/member-invite/notify", json={"union_id": str(union.id)}).json()["data"]

        assert data["success"] is True
        assert data["recipient_count"] == 1


class TestAdsApi:
    """Admin ad routes, the ad list cache and the tenant feed."""

    def test_create_tagged_union(self, client, union):
        banner = client.post("/api/admin/ads", json={
            "ad_type": "MAIN", "partner_name": "미아상사", "union_id": str(union.id),
            "image_url": "https://cdn.johapon.kr/a.png",
        })
        assert banner.status_code == 200
        assert banner.json()["data"]["ad_type"] == "MAIN"

        error = assert_error(client.post("/api/admin/ads", json={
            "ad_type": "BOARD", "partner_name": "미아상사", "image_url": "https://cdn.johapon.kr/a.png",
        }), 422, "VALIDATION_ERROR")
        locs = {tuple(e["loc"]) for e in error["details"]["errors"]}
        assert ("body", "BOARD", "content") in locs

    def test_list_cache_invalidated_on_write(self, client):
        ad = {"ad_type": "SUB", "partner_name": "전국이사", "image_url": "https://cdn.johapon.kr/b.png"}
        client.post("/api/admin/ads", json=ad)
        assert client.get("/api/admin/ads?union_id=common").json()["data"]["total"] == 1

        created = client.post("/api/admin/ads", json={**ad, "partner_name": "강북이사"}).json()["data"]
        listed = client.get("/api/admin/ads?union_id=common").json()["data"]
        assert listed["total"] == 2
        assert listed["has_more"] is False

        client.patch(f"/api/admin/ads/{created['id']}", json={"is_active": False})
        assert client.get("/api/admin/ads?is_active=false").json()["data"]["total"] == 1

        client.delete(f"/api/admin/ads/{created['id']}")
        assert client.get("/api/admin/ads").json()["data"]["total"] == 1
        assert_error(client.get(f"/api/admin/ads/{created['id']}"), 404, "NOT_FOUND")

    def test_invalid_union_filter(self, client):
        assert_error(client.get("/api/admin/ads?union_id=somewhere"), 400, "VALIDATION_ERROR")

    def test_update_shape_violation(self, client):
        ad = client.post("/api/admin/ads", json={
            "ad_type": "MAIN", "partner_name": "미아상사", "image_url": "https://cdn.johapon.kr/a.png",
        }).json()["data"]

        assert_error(client.patch(f"/api/admin/ads/{ad['id']}", json={"ad_type": "BOARD"}), 400, "VALIDATION_ERROR")

    def test_contracts_invoices_and_tenant_feed(self, client, union):
        ad = client.post("/api/admin/ads", json={
            "ad_type": "MAIN", "partner_name": "미아상사", "union_id": str(union.id),
            "image_url": "https://cdn.johapon.kr/a.png",
        }).json()["data"]
        today = date.today()
        term = {"ad_id": ad["id"], "start_date": f"{today.year}-01-01", "end_date": f"{today.year}-12-31",
                "amount": 1_200_000, "billing_cycle": "YEARLY", "status": "ACTIVE"}

        contract = client.post("/api/admin/ad-contracts", json=term)
        assert contract.status_code == 200
        assert contract.json()["data"]["union_id"] == str(union.id)
        assert_error(client.post("/api/admin/ad-contracts", json=term), 409, "CONFLICT")
        assert_error(client.post("/api/admin/ad-contracts", json={**term, "amount": 0}), 422, "VALIDATION_ERROR")

        month = today.strftime("%Y-%m")
        generated = client.post("/api/admin/ad-invoices/generate", json={"month": month}).json()["data"]
        assert (generated["created"], generated["skipped"]) == (1, 0)
        assert_error(client.post("/api/admin/ad-invoices/generate", json={"month": "2025-13"}), 422, "VALIDATION_ERROR")

        invoices = client.get("/api/admin/ad-invoices").json()["data"]
        [invoice] = invoices["items"]
        assert invoice["amount"] == 100_000
        assert invoice["partner_name"] == "미아상사"
        assert_error(client.get("/api/admin/ad-invoices", params={"month": "0000-01"}), 400, "VALIDATION_ERROR")
        assert_error(client.post("/api/admin/ad-invoices/generate", json={"month": "0000-01"}), 400, "VALIDATION_ERROR")

        paid = client.patch(f"/api/admin/ad-invoices/{invoice['id']}", json={
            "status": "PAID", "paid_at": f"{today.isoformat()}T12:00:00",
        }).json()["data"]
        assert paid["status"] == "PAID"
        assert paid["paid_at"] is not None

        dashboard = client.get("/api/admin/ads-dashboard").json()["data"]
        assert dashboard["monthly"]["paid_amount"] == 100_000
        assert dashboard["contracts"]["active"] == 1

        feed = client.get("/api/tenant/mia2/ads?ad_type=MAIN&limit=3").json()["data"]["items"]
        assert [a["partner_name"] for a in feed] == ["미아상사"]
        assert_error(client.get("/api/tenant/nowhere/ads"), 404, "NOT_FOUND")


class TestNotificationsApi:

    def test_send(self, client, union):
        response = client.post("/api/notifications/send", json={
            "union_id": str(union.id),
            "template_code": "NOTICE",
            "recipients": [{"phone_number": "010-1111-2222", "name": "김철수", "variables": {"title": "총회"}}],
        })

        data = response.json()["data"]
        assert data["success"] is True
        assert data["kakao_count"] == 1
        assert data["estimated_cost"] == 15

    def test_send_requires_recipients(self, client):
        assert_error(
            client.post("/api/notifications/send", json={"template_code": "NOTICE", "recipients": []}),
            422, "VALIDATION_ERROR",
        )

    def test_proxy_routes_run_in_threadpool(self):
        """Routes that wait on the messaging proxy must not block the event loop."""
        for endpoint in (send_notification, notify_invitees, resolve_conflict_endpoint):
            assert not inspect.iscoroutinefunction(endpoint)
