"""
Read-side reductions over fetched rows: budget overview, head rollups and invoice stats.

All functions take already-queried model rows and return plain dicts ready for jsonify.
Amounts are summed as Decimal and returned as strings, matching the API's money format.
"""

from __future__ import annotations

from collections import OrderedDict
from decimal import Decimal
from typing import Iterable

from .models import _money, _to_decimal

UNASSIGNED = "Unassigned"

INVOICE_STAT_STATUSES = ("submitted", "under_approval", "approved", "disputed")


def _approved_value(allocation) -> Decimal:
    return _to_decimal(allocation.approved_amount)


def _department_status(statuses: list[str]) -> str:
    """approved wins, then pending (submitted / under review), else the first status seen."""
    if "approved" in statuses:
        return "approved"
    if "submitted" in statuses or "under_review" in statuses:
        return "pending"
    return statuses[0] if statuses else "no_budget"


def budget_overview(allocations: Iterable, departments: Iterable = ()) -> dict:
    """
    Summary for one fiscal year.

    - totals split by head type; any non-income head counts as expenditure
    - allocation counts by status (missing status counts as draft)
    - per-department breakdown; listed departments without allocations show "no_budget"
    - per-head allocated totals for income and expenditure, non-zero only, largest first
    """
    allocations = list(allocations)

    totals = {
        "income_allocated": Decimal("0.00"),
        "income_approved": Decimal("0.00"),
        "expenditure_allocated": Decimal("0.00"),
        "expenditure_approved": Decimal("0.00"),
    }
    status_counts: dict[str, int] = {}
    per_department: "OrderedDict[str, dict]" = OrderedDict()
    per_head = {"income": {}, "expenditure": {}}

    for department in departments:
        per_department[department.name] = {
            "department_id": department.id,
            "department": department.name,
            "allocated": Decimal("0.00"),
            "approved": Decimal("0.00"),
            "pending_count": 0,
            "statuses": [],
        }

    for allocation in allocations:
        head = allocation.head
        head_type = "income" if head is not None and head.type == "income" else "expenditure"
        allocated = _to_decimal(allocation.allocated_amount)
        approved = _approved_value(allocation)
        status = allocation.status or "draft"

        totals[f"{head_type}_allocated"] += allocated
        totals[f"{head_type}_approved"] += approved
        status_counts[status] = status_counts.get(status, 0) + 1

        dept_name = allocation.department.name if allocation.department else UNASSIGNED
        bucket = per_department.setdefault(
            dept_name,
            {
                "department_id": allocation.department_id,
                "department": dept_name,
                "allocated": Decimal("0.00"),
                "approved": Decimal("0.00"),
                "pending_count": 0,
                "statuses": [],
            },
        )
        bucket["allocated"] += allocated
        bucket["approved"] += approved
        if status in ("submitted", "under_review"):
            bucket["pending_count"] += 1
        bucket["statuses"].append(status)

        head_name = head.name if head is not None else UNASSIGNED
        per_head[head_type][head_name] = per_head[head_type].get(head_name, Decimal("0.00")) + allocated

    departments_out = []
    for bucket in per_department.values():
        statuses = bucket.pop("statuses")
        bucket["status"] = _department_status(statuses)
        bucket["allocated"] = str(_money(bucket["allocated"]))
        bucket["approved"] = str(_money(bucket["approved"]))
        departments_out.append(bucket)

    def _head_rows(amounts: dict) -> list[dict]:
        rows = [(name, amount) for name, amount in amounts.items() if amount != 0]
        rows.sort(key=lambda pair: pair[1], reverse=True)
        return [{"head": name, "allocated": str(_money(amount))} for name, amount in rows]

    return {
        "totals": {key: str(_money(value)) for key, value in totals.items()},
        "status_counts": status_counts,
        "allocation_count": len(allocations),
        "departments": departments_out,
        "income_heads": _head_rows(per_head["income"]),
        "expenditure_heads": _head_rows(per_head["expenditure"]),
    }


def head_rollup(allocations: Iterable) -> list[dict]:
    """
    Allocated / approved totals per main head, with sub-head amounts folded into their parent.

    Each row lists the contributing sub-heads so clients can expand the hierarchy.
    """
    rows: "OrderedDict[int, dict]" = OrderedDict()

    for allocation in allocations:
        head = allocation.head
        if head is None:
            continue
        main = head.rollup_head
        row = rows.setdefault(
            main.id,
            {
                "head_id": main.id,
                "code": main.code,
                "name": main.name,
                "type": main.type,
                "display_order": main.display_order,
                "allocated": Decimal("0.00"),
                "approved": Decimal("0.00"),
                "subheads": OrderedDict(),
            },
        )
        allocated = _to_decimal(allocation.allocated_amount)
        approved = _approved_value(allocation)
        row["allocated"] += allocated
        row["approved"] += approved

        if main.id != head.id:
            sub = row["subheads"].setdefault(
                head.id,
                {"head_id": head.id, "code": head.code, "name": head.name, "allocated": Decimal("0.00"), "approved": Decimal("0.00")},
            )
            sub["allocated"] += allocated
            sub["approved"] += approved

    out = []
    for row in sorted(rows.values(), key=lambda r: (r["type"], r["display_order"])):
        subheads = []
        for sub in row.pop("subheads").values():
            sub["allocated"] = str(_money(sub["allocated"]))
            sub["approved"] = str(_money(sub["approved"]))
            subheads.append(sub)
        row["allocated"] = str(_money(row["allocated"]))
        row["approved"] = str(_money(row["approved"]))
        row["subheads"] = subheads
        out.append(row)
    return out


def invoice_stats(invoices: Iterable, base_currency: str) -> dict:
    """Counts for the open workflow statuses plus invoice totals grouped by currency."""
    counts = {status: 0 for status in INVOICE_STAT_STATUSES}
    totals: dict[str, Decimal] = {}
    invoice_count = 0

    for invoice in invoices:
        invoice_count += 1
        if invoice.status in counts:
            counts[invoice.status] += 1
        currency = invoice.currency or base_currency
        totals[currency] = totals.get(currency, Decimal("0.00")) + _to_decimal(invoice.total_amount)

    return {
        "total_count": invoice_count,
        "counts": counts,
        "totals_by_currency": {currency: str(_money(amount)) for currency, amount in sorted(totals.items())},
    }
