"""
Integration tests for authentication, user administration, master data and the audit trail.
"""
import json

from procurement_suite.extensions import db
from procurement_suite.models import AuditLog, Department, User


class TestLogin:

    def test_login_and_me(self, make_user, login, department):
        make_user("alice", role="finance_officer", department_id=department)
        client = login("alice")
        data = client.get("/auth/me").get_json()["user"]
        assert data["username"] == "alice"
        assert data["department_name"] == "Operations"
        assert "password_hash" not in data

    def test_bad_password(self, anon_client, make_user):
        make_user("alice")
        r = anon_client.post("/auth/login", json={"username": "alice", "password": "wrong"})
        assert r.status_code == 401

    def test_inactive_user_refused(self, anon_client, make_user):
        make_user("alice", is_active=False)
        r = anon_client.post("/auth/login", json={"username": "alice", "password": "secret123"})
        assert r.status_code == 403

    def test_missing_fields(self, anon_client):
        r = anon_client.post("/auth/login", json={})
        assert r.status_code == 400
        assert set(r.get_json()["fields"]) == {"username", "password"}

    def test_anonymous_gets_json_401(self, anon_client):
        r = anon_client.get("/auth/me")
        assert r.status_code == 401
        assert "error" in r.get_json()

    def test_logout(self, requester_client):
        assert requester_client.post("/auth/logout").status_code == 200
        assert requester_client.get("/auth/me").status_code == 401

    def test_health(self, anon_client):
        assert anon_client.get("/health").get_json() == {"status": "ok"}


class TestSeedAdmin:

    def test_only_first_user(self, app, anon_client):
        r = anon_client.post("/auth/seed-admin", json={"username": "root", "password": "changeme"})
        assert r.status_code == 201
        assert r.get_json()["user"]["is_admin"] is True

        r = anon_client.post("/auth/seed-admin", json={"username": "root2", "password": "changeme"})
        assert r.status_code == 409

        with app.app_context():
            assert User.query.count() == 1


class TestUsers:

    def test_admin_creates_user(self, admin_client, department):
        r = admin_client.post(
            "/users/",
            json={"username": "bob", "password": "hunter22", "role": "finance_officer", "department_id": department},
        )
        assert r.status_code == 201
        assert r.get_json()["user"]["role"] == "finance_officer"

        r = admin_client.post("/users/", json={"username": "bob", "password": "hunter22"})
        assert r.status_code == 409

    def test_password_required_on_create(self, admin_client):
        r = admin_client.post("/users/", json={"username": "bob"})
        assert r.status_code == 400
        assert "password" in r.get_json()["fields"]

    def test_unknown_role_rejected(self, admin_client):
        r = admin_client.post("/users/", json={"username": "bob", "password": "hunter22", "role": "wizard"})
        assert r.status_code == 400

    def test_admin_cannot_demote_self(self, app, admin_client):
        with app.app_context():
            admin_id = User.query.filter_by(username="admin").one().id
        r = admin_client.put(f"/users/{admin_id}", json={"username": "admin", "is_admin": False})
        assert r.status_code == 400

    def test_non_admin_forbidden(self, finance_client):
        assert finance_client.get("/users/").status_code == 403


class TestViewerGuard:

    def test_viewer_can_read_but_not_write(self, viewer_client):
        assert viewer_client.get("/master-data/vendors").status_code == 200
        r = viewer_client.post("/master-data/vendors", json={"company_name": "X"})
        assert r.status_code == 403

    def test_viewer_can_log_out(self, viewer_client):
        assert viewer_client.post("/auth/logout").status_code == 200


class TestMasterData:

    def test_department_names_unique(self, admin_client, department):
        r = admin_client.post("/master-data/departments", json={"name": "operations"})
        assert r.status_code == 409

    def test_department_in_use_cannot_be_deleted(self, admin_client, requester_client, department):
        assert admin_client.delete(f"/master-data/departments/{department}").status_code == 409

    def test_unused_department_deleted(self, app, admin_client, other_department):
        assert admin_client.delete(f"/master-data/departments/{other_department}").status_code == 200
        with app.app_context():
            assert db.session.get(Department, other_department) is None

    def test_vendor_crud_and_search(self, procurement_client):
        r = procurement_client.post(
            "/master-data/vendors",
            json={"company_name": "Northwind", "tax_id": "TX-1", "primary_email": "info@northwind.test"},
        )
        assert r.status_code == 201
        vendor_id = r.get_json()["vendor"]["id"]

        r = procurement_client.post("/master-data/vendors", json={"company_name": "Clone", "tax_id": "TX-1"})
        assert r.status_code == 409

        rows = procurement_client.get("/master-data/vendors?search=north").get_json()["vendors"]
        assert [v["id"] for v in rows] == [vendor_id]

        assert procurement_client.delete(f"/master-data/vendors/{vendor_id}").status_code == 200

    def test_vendor_email_validated(self, procurement_client):
        r = procurement_client.post("/master-data/vendors", json={"company_name": "X", "primary_email": "nope"})
        assert r.status_code == 400
        assert "primary_email" in r.get_json()["fields"]


class TestAuditTrail:

    def test_mutations_are_logged(self, app, procurement_client):
        r = procurement_client.post("/master-data/vendors", json={"company_name": "Logged Ltd"})
        vendor_id = r.get_json()["vendor"]["id"]
        procurement_client.put(f"/master-data/vendors/{vendor_id}", json={"company_name": "Logged Ltd 2"})

        with app.app_context():
            entries = (
                AuditLog.query.filter_by(entity_type="Vendor", entity_id=vendor_id)
                .order_by(AuditLog.id.asc())
                .all()
            )
            assert [e.action for e in entries] == ["CREATE", "UPDATE"]
            assert entries[0].username_snapshot == "buyer"
            assert json.loads(entries[1].before_data)["company_name"] == "Logged Ltd"
            assert json.loads(entries[1].after_data)["company_name"] == "Logged Ltd 2"
