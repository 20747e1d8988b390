"""
Integration tests for /requests: numbering, items, review workflow and department isolation.
"""
from datetime import date
from decimal import Decimal

import pytest


@pytest.fixture
def draft_request(requester_client):
    r = requester_client.post(
        "/requests/", json={"title": "New monitors", "date_needed": "2025-06-30", "priority": "high"}
    )
    assert r.status_code == 201, r.get_json()
    return r.get_json()["request"]["id"]


@pytest.fixture
def submitted_request(requester_client, draft_request):
    requester_client.post(
        f"/requests/{draft_request}/items",
        json={"description": "27in monitor", "quantity": 4, "estimated_price": "189.99"},
    )
    assert requester_client.post(f"/requests/{draft_request}/submit").status_code == 200
    return draft_request


class TestCreate:

    def test_number_and_department(self, requester_client, draft_request, department):
        data = requester_client.get(f"/requests/{draft_request}").get_json()["request"]
        assert data["request_number"] == f"PR-{date.today().year}-001"
        assert data["department_id"] == department
        assert data["department_name"] == "Operations"
        assert data["status"] == "draft"
        assert data["priority"] == "high"

    def test_title_and_date_needed_required(self, requester_client):
        r = requester_client.post("/requests/", json={"priority": "low"})
        assert r.status_code == 400
        assert set(r.get_json()["fields"]) >= {"title", "date_needed"}

    def test_cannot_file_for_another_department(self, requester_client, other_department):
        r = requester_client.post(
            "/requests/",
            json={"title": "X", "date_needed": "2025-06-30", "department_id": other_department},
        )
        assert r.status_code == 403

    def test_viewer_is_read_only(self, viewer_client):
        r = viewer_client.post("/requests/", json={"title": "X", "date_needed": "2025-06-30"})
        assert r.status_code == 403
        assert viewer_client.get("/requests/").status_code == 200


class TestItems:

    def test_estimated_value_follows_items(self, requester_client, draft_request):
        r = requester_client.post(
            f"/requests/{draft_request}/items",
            json={"description": "Monitor", "quantity": 4, "estimated_price": "189.99"},
        )
        assert r.status_code == 201
        assert Decimal(r.get_json()["request"]["estimated_value"]) == Decimal("759.96")

        r = requester_client.post(
            f"/requests/{draft_request}/items", json={"description": "HDMI cable", "quantity": 4}
        )
        data = r.get_json()["request"]
        assert Decimal(data["estimated_value"]) == Decimal("759.96")

        r = requester_client.delete(f"/requests/{draft_request}/items/{data['items'][0]['id']}")
        assert Decimal(r.get_json()["request"]["estimated_value"]) == Decimal("0")

    def test_items_locked_after_submit(self, requester_client, submitted_request):
        r = requester_client.post(
            f"/requests/{submitted_request}/items", json={"description": "Late", "quantity": 1}
        )
        assert r.status_code == 400


class TestWorkflow:

    def test_submit_requires_items(self, requester_client, draft_request):
        assert requester_client.post(f"/requests/{draft_request}/submit").status_code == 400

    def test_review_and_approve(self, procurement_client, submitted_request):
        r = procurement_client.post(f"/requests/{submitted_request}/review")
        assert r.get_json()["request"]["status"] == "in_review"
        r = procurement_client.post(f"/requests/{submitted_request}/approve")
        assert r.get_json()["request"]["status"] == "approved"
        r = procurement_client.post(f"/requests/{submitted_request}/complete")
        assert r.get_json()["request"]["status"] == "completed"

    def test_reject_records_reason(self, procurement_client, submitted_request):
        assert procurement_client.post(f"/requests/{submitted_request}/reject", json={}).status_code == 400
        r = procurement_client.post(f"/requests/{submitted_request}/reject", json={"reason": "No budget"})
        data = r.get_json()["request"]
        assert data["status"] == "rejected"
        assert data["rejection_reason"] == "No budget"

    def test_requester_cannot_approve(self, requester_client, submitted_request):
        assert requester_client.post(f"/requests/{submitted_request}/approve").status_code == 403

    def test_admin_submission_is_approved_directly(self, admin_client):
        request_id = admin_client.post(
            "/requests/", json={"title": "Server rack", "date_needed": "2025-09-01"}
        ).get_json()["request"]["id"]
        admin_client.post(f"/requests/{request_id}/items", json={"description": "Rack", "quantity": 1})
        r = admin_client.post(f"/requests/{request_id}/submit")
        assert r.get_json()["request"]["status"] == "approved"

    def test_requester_can_cancel_own_request(self, requester_client, submitted_request):
        r = requester_client.post(f"/requests/{submitted_request}/cancel")
        assert r.get_json()["request"]["status"] == "canceled"
        assert requester_client.post(f"/requests/{submitted_request}/cancel").status_code == 400


class TestDepartmentIsolation:

    def test_other_department_cannot_see_request(self, make_user, login, other_department, draft_request):
        make_user("outsider", role="requester", department_id=other_department)
        client = login("outsider")
        assert client.get(f"/requests/{draft_request}").status_code == 403
        assert client.get("/requests/").get_json()["requests"] == []

    def test_reviewers_see_all_departments(self, procurement_client, draft_request):
        rows = procurement_client.get("/requests/").get_json()["requests"]
        assert [row["id"] for row in rows] == [draft_request]

    def test_filters(self, requester_client, draft_request):
        assert requester_client.get("/requests/?priority=low").get_json()["requests"] == []
        rows = requester_client.get("/requests/?search=monitors&needed_before=2025-07-01").get_json()["requests"]
        assert [row["id"] for row in rows] == [draft_request]
