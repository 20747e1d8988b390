"""
Shared pytest fixtures for the Procurement Suite test suite.

Each role gets its own Flask test client (own cookie jar) so sessions never leak between
users. Database work in fixtures happens inside short app contexts; the in-memory SQLite
engine is shared by all of them.
"""
from datetime import date

import pytest

from procurement_suite import create_app
from procurement_suite.extensions import db
from procurement_suite.models import (
    BudgetCycle,
    BudgetHead,
    Department,
    EmailProviderSettings,
    User,
    Vendor,
)

PASSWORD = "secret123"


@pytest.fixture
def app():
    """Create the Flask app on TestingConfig with fresh tables."""
    app = create_app("config.TestingConfig")
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def anon_client(app):
    return app.test_client()


# ── Factories ─────────────────────────────────────────────────────────────────

@pytest.fixture
def make_department(app):
    def _make(name="Operations", code=None):
        with app.app_context():
            department = Department(name=name, code=code)
            db.session.add(department)
            db.session.commit()
            return department.id
    return _make


@pytest.fixture
def make_user(app):
    def _make(username, role="requester", is_admin=False, department_id=None, is_active=True):
        with app.app_context():
            user = User(
                username=username,
                full_name=username.title(),
                role=role,
                is_admin=is_admin,
                is_active=is_active,
                department_id=department_id,
            )
            user.set_password(PASSWORD)
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make


@pytest.fixture
def make_vendor(app):
    def _make(company_name="Acme Supplies", primary_email="sales@acme.test", is_active=True):
        with app.app_context():
            vendor = Vendor(company_name=company_name, primary_email=primary_email, is_active=is_active)
            db.session.add(vendor)
            db.session.commit()
            return vendor.id
    return _make


@pytest.fixture
def login(app):
    """Return a fresh client logged in as username."""
    def _login(username, password=PASSWORD):
        client = app.test_client()
        r = client.post("/auth/login", json={"username": username, "password": password})
        assert r.status_code == 200, r.get_json()
        return client
    return _login


# ── Common records ────────────────────────────────────────────────────────────

@pytest.fixture
def department(make_department):
    return make_department("Operations", "OPS")


@pytest.fixture
def other_department(make_department):
    return make_department("Research", "RND")


@pytest.fixture
def vendor(make_vendor):
    return make_vendor()


@pytest.fixture
def open_cycle(app):
    with app.app_context():
        cycle = BudgetCycle(
            name="FY 2025",
            fiscal_year=2025,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 12, 31),
            period_type="monthly",
            status="open",
        )
        db.session.add(cycle)
        db.session.commit()
        return cycle.id


@pytest.fixture
def expenditure_head(app):
    with app.app_context():
        head = BudgetHead(name="Office Supplies", code="EXP001", type="expenditure", display_order=1)
        db.session.add(head)
        db.session.commit()
        return head.id


@pytest.fixture
def income_head(app):
    with app.app_context():
        head = BudgetHead(name="Grants", code="INC001", type="income", display_order=1)
        db.session.add(head)
        db.session.commit()
        return head.id


@pytest.fixture
def smtp_provider(app):
    with app.app_context():
        provider = EmailProviderSettings(
            provider="custom_smtp",
            from_email="noreply@example.test",
            from_name="Procurement",
            smtp_host="smtp.example.test",
            smtp_port=587,
            smtp_secure=True,
            username="mailer",
            password="pw",
            is_active=True,
        )
        db.session.add(provider)
        db.session.commit()
        return provider.id


# ── Logged-in clients per role ────────────────────────────────────────────────

@pytest.fixture
def admin_client(make_user, login):
    make_user("admin", role="procurement_officer", is_admin=True)
    return login("admin")


@pytest.fixture
def requester_client(make_user, login, department):
    make_user("requester", role="requester", department_id=department)
    return login("requester")


@pytest.fixture
def procurement_client(make_user, login, department):
    make_user("buyer", role="procurement_officer", department_id=department)
    return login("buyer")


@pytest.fixture
def finance_client(make_user, login, department):
    make_user("finance", role="finance_officer", department_id=department)
    return login("finance")


@pytest.fixture
def committee_client(make_user, login, department):
    make_user("committee", role="evaluation_committee", department_id=department)
    return login("committee")


@pytest.fixture
def viewer_client(make_user, login, department):
    make_user("viewer", role="viewer", department_id=department)
    return login("viewer")


# ── SMTP fake ─────────────────────────────────────────────────────────────────

class FakeSMTP:
    """Records what the mailer does instead of opening sockets."""

    instances = []
    fail_with = None
    login_fails_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in_as = None
        self.sent = []
        self.closed = False
        FakeSMTP.instances.append(self)
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        if FakeSMTP.login_fails_with is not None:
            raise FakeSMTP.login_fails_with
        self.logged_in_as = username

    def sendmail(self, from_addr, to_addrs, message):
        self.sent.append((from_addr, to_addrs, message))

    def quit(self):
        self.closed = True

    def close(self):
        self.closed = True


@pytest.fixture
def fake_smtp(monkeypatch):
    import smtplib

    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    FakeSMTP.login_fails_with = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP
