"""
Integration tests for the /budgets blueprint: cycles, heads, allocations and the overview.
"""
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from procurement_suite.extensions import db
from procurement_suite.models import BudgetAllocation, BudgetCycle, BudgetHead


@pytest.fixture
def allocation(requester_client, open_cycle, expenditure_head):
    r = requester_client.post(
        "/budgets/allocations",
        json={"cycle_id": open_cycle, "head_id": expenditure_head, "period_number": 1, "allocated_amount": "1000"},
    )
    assert r.status_code == 201, r.get_json()
    return r.get_json()["allocation"]["id"]


# ═══════════════════════════════════════════════════════════════════════════════
# CYCLES
# ═══════════════════════════════════════════════════════════════════════════════

class TestCycles:

    def test_create_and_open(self, finance_client):
        r = finance_client.post(
            "/budgets/cycles",
            json={"name": "FY 2026", "fiscal_year": 2026, "start_date": "2026-01-01", "end_date": "2026-12-31"},
        )
        assert r.status_code == 201
        cycle = r.get_json()["cycle"]
        assert cycle["status"] == "draft"

        r = finance_client.post(f"/budgets/cycles/{cycle['id']}/status", json={"status": "open"})
        assert r.status_code == 200
        assert r.get_json()["cycle"]["status"] == "open"

    def test_end_before_start_rejected(self, finance_client):
        r = finance_client.post(
            "/budgets/cycles",
            json={"name": "Bad", "fiscal_year": 2026, "start_date": "2026-12-31", "end_date": "2026-01-01"},
        )
        assert r.status_code == 400
        assert "end_date" in r.get_json()["fields"]

    def test_invalid_transition_rejected(self, finance_client, open_cycle):
        r = finance_client.post(f"/budgets/cycles/{open_cycle}/status", json={"status": "draft"})
        assert r.status_code == 400

    def test_requester_cannot_create(self, requester_client):
        r = requester_client.post(
            "/budgets/cycles",
            json={"name": "FY", "fiscal_year": 2026, "start_date": "2026-01-01", "end_date": "2026-12-31"},
        )
        assert r.status_code == 403


# ═══════════════════════════════════════════════════════════════════════════════
# HEADS
# ═══════════════════════════════════════════════════════════════════════════════

class TestHeads:

    def test_codes_and_order_are_generated(self, finance_client):
        r = finance_client.get("/budgets/heads/next-code?type=income")
        assert r.get_json() == {"code": "INC001", "display_order": 1}

        r = finance_client.post("/budgets/heads", json={"name": "Grants", "type": "income"})
        assert r.status_code == 201
        head = r.get_json()["head"]
        assert head["code"] == "INC001"
        assert head["display_order"] == 1

        r = finance_client.post("/budgets/heads", json={"name": "Donations", "type": "income"})
        assert r.get_json()["head"]["code"] == "INC002"
        assert r.get_json()["head"]["display_order"] == 2

    def test_duplicate_display_order_is_rejected(self, finance_client, expenditure_head):
        r = finance_client.post(
            "/budgets/heads", json={"name": "Travel", "type": "expenditure", "display_order": 1}
        )
        assert r.status_code == 409
        assert r.get_json()["error"] == (
            "Display order 1 is already used for expenditure type. Please choose a different order."
        )

    def test_same_display_order_allowed_across_types(self, finance_client, expenditure_head):
        r = finance_client.post("/budgets/heads", json={"name": "Fees", "type": "income", "display_order": 1})
        assert r.status_code == 201

    def test_database_constraint_backs_display_order(self, app, expenditure_head):
        with app.app_context():
            db.session.add(BudgetHead(name="Dup", code="EXP999", type="expenditure", display_order=1))
            with pytest.raises(IntegrityError):
                db.session.commit()
            db.session.rollback()

    def test_subhead_requires_parent(self, finance_client):
        r = finance_client.post("/budgets/heads", json={"name": "Pens", "type": "expenditure", "is_subhead": True})
        assert r.status_code == 400

    def test_subhead_type_must_match_parent(self, finance_client, income_head):
        r = finance_client.post(
            "/budgets/heads",
            json={"name": "Pens", "type": "expenditure", "is_subhead": True, "parent_id": income_head},
        )
        assert r.status_code == 400

    def test_rollup_folds_subheads_into_parent(self, app, finance_client, open_cycle, expenditure_head, department):
        r = finance_client.post(
            "/budgets/heads",
            json={"name": "Pens", "type": "expenditure", "is_subhead": True, "parent_id": expenditure_head},
        )
        sub_id = r.get_json()["head"]["id"]
        with app.app_context():
            db.session.add_all([
                BudgetAllocation(cycle_id=open_cycle, head_id=expenditure_head, department_id=department,
                                 period_number=1, allocated_amount=Decimal("100.00")),
                BudgetAllocation(cycle_id=open_cycle, head_id=sub_id, department_id=department,
                                 period_number=1, allocated_amount=Decimal("25.50")),
            ])
            db.session.commit()

        rows = finance_client.get("/budgets/heads/rollup?fiscal_year=2025").get_json()["heads"]
        assert len(rows) == 1
        assert rows[0]["head_id"] == expenditure_head
        assert Decimal(rows[0]["allocated"]) == Decimal("125.50")
        assert [s["head_id"] for s in rows[0]["subheads"]] == [sub_id]

    def test_delete_head_in_use_conflicts(self, finance_client, allocation, expenditure_head):
        r = finance_client.delete(f"/budgets/heads/{expenditure_head}")
        assert r.status_code == 409


# ═══════════════════════════════════════════════════════════════════════════════
# ALLOCATIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestAllocations:

    def test_department_defaults_to_users(self, requester_client, allocation, department):
        r = requester_client.get(f"/budgets/allocations/{allocation}")
        data = r.get_json()["allocation"]
        assert data["department_id"] == department
        assert data["status"] == "draft"

    def test_requires_open_cycle(self, app, requester_client, open_cycle, expenditure_head):
        with app.app_context():
            db.session.get(BudgetCycle, open_cycle).status = "closed"
            db.session.commit()
        r = requester_client.post(
            "/budgets/allocations",
            json={"cycle_id": open_cycle, "head_id": expenditure_head, "period_number": 1, "allocated_amount": "10"},
        )
        assert r.status_code == 400

    def test_full_approval_flow(self, requester_client, finance_client, allocation):
        assert requester_client.post(f"/budgets/allocations/{allocation}/submit").status_code == 200
        assert finance_client.post(f"/budgets/allocations/{allocation}/review").status_code == 200

        r = finance_client.post(f"/budgets/allocations/{allocation}/approve", json={})
        assert r.status_code == 200
        data = r.get_json()["allocation"]
        assert data["status"] == "approved"
        assert Decimal(data["approved_amount"]) == Decimal("1000")

    def test_reject_requires_reason_and_can_reopen(self, requester_client, finance_client, allocation):
        requester_client.post(f"/budgets/allocations/{allocation}/submit")

        assert finance_client.post(f"/budgets/allocations/{allocation}/reject", json={}).status_code == 400
        r = finance_client.post(f"/budgets/allocations/{allocation}/reject", json={"reason": "Too high"})
        assert r.get_json()["allocation"]["status"] == "rejected"

        r = requester_client.post(f"/budgets/allocations/{allocation}/reopen")
        assert r.get_json()["allocation"]["status"] == "draft"

    def test_only_drafts_are_editable(self, requester_client, allocation):
        requester_client.post(f"/budgets/allocations/{allocation}/submit")
        r = requester_client.put(f"/budgets/allocations/{allocation}", json={"allocated_amount": "5"})
        assert r.status_code == 400

    def test_cannot_approve_draft(self, finance_client, allocation):
        r = finance_client.post(f"/budgets/allocations/{allocation}/approve", json={})
        assert r.status_code == 400

    def test_other_department_is_hidden(self, make_user, login, other_department, allocation):
        make_user("outsider", role="requester", department_id=other_department)
        client = login("outsider")
        assert client.get(f"/budgets/allocations/{allocation}").status_code == 403
        assert client.get("/budgets/allocations").get_json()["allocations"] == []


# ═══════════════════════════════════════════════════════════════════════════════
# OVERVIEW
# ═══════════════════════════════════════════════════════════════════════════════

class TestOverview:

    def test_totals_split_by_head_type(
        self, app, admin_client, open_cycle, expenditure_head, income_head, department, other_department
    ):
        with app.app_context():
            db.session.add_all([
                BudgetAllocation(cycle_id=open_cycle, head_id=expenditure_head, department_id=department,
                                 period_number=1, allocated_amount=Decimal("300.00"),
                                 approved_amount=Decimal("250.00"), status="approved"),
                BudgetAllocation(cycle_id=open_cycle, head_id=income_head, department_id=department,
                                 period_number=1, allocated_amount=Decimal("500.00"), status="submitted"),
            ])
            db.session.commit()

        data = admin_client.get("/budgets/overview?fiscal_year=2025").get_json()
        assert Decimal(data["totals"]["expenditure_allocated"]) == Decimal("300")
        assert Decimal(data["totals"]["expenditure_approved"]) == Decimal("250")
        assert Decimal(data["totals"]["income_allocated"]) == Decimal("500")
        assert data["status_counts"] == {"approved": 1, "submitted": 1}

        by_name = {row["department"]: row for row in data["departments"]}
        assert by_name["Operations"]["status"] == "approved"
        assert by_name["Operations"]["pending_count"] == 1
        assert by_name["Research"]["status"] == "no_budget"

        assert data["income_heads"] == [{"head": "Grants", "allocated": "500.00"}]
