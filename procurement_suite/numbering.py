"""
Document numbering.

Numbers look like PREFIX-YYYY-NNNN and continue from the highest sequence already used for the
year. Two concurrent creators can compute the same number; the unique constraint on the number
column rejects the second insert, which surfaces to the client as a 409.
"""

from __future__ import annotations

import re
from datetime import date

from sqlalchemy import func

from .extensions import db
from .models import BudgetHead, Invoice, ProcurementRequest, PurchaseOrder, Rfp

HEAD_CODE_PREFIX = {"income": "INC", "expenditure": "EXP"}


def _next_sequence(column, prefix: str, year: int) -> int:
    stem = f"{prefix}-{year}-"
    pattern = re.compile(rf"^{re.escape(stem)}(\d+)$")

    highest = 0
    for (number,) in db.session.query(column).filter(column.like(f"{stem}%")):
        match = pattern.match(number or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def _format(prefix: str, year: int, seq: int, width: int) -> str:
    return f"{prefix}-{year}-{seq:0{width}d}"


def next_po_number(today: date | None = None) -> str:
    year = (today or date.today()).year
    return _format("PO", year, _next_sequence(PurchaseOrder.po_number, "PO", year), 4)


def next_invoice_number(today: date | None = None) -> str:
    year = (today or date.today()).year
    return _format("INV", year, _next_sequence(Invoice.invoice_number, "INV", year), 4)


def next_rfp_number(today: date | None = None) -> str:
    year = (today or date.today()).year
    return _format("RFP", year, _next_sequence(Rfp.rfp_number, "RFP", year), 4)


def next_request_number(today: date | None = None) -> str:
    year = (today or date.today()).year
    return _format("PR", year, _next_sequence(ProcurementRequest.request_number, "PR", year), 3)


def next_head_code(head_type: str) -> str:
    """INC001 / EXP001 style codes, continuing from the highest code of that type."""
    prefix = HEAD_CODE_PREFIX.get(head_type, "EXP")
    pattern = re.compile(rf"^{prefix}(\d+)$")

    highest = 0
    for (code,) in db.session.query(BudgetHead.code).filter(BudgetHead.code.like(f"{prefix}%")):
        match = pattern.match(code or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}{highest + 1:03d}"


def next_display_order(head_type: str) -> int:
    current = (
        db.session.query(func.max(BudgetHead.display_order))
        .filter(BudgetHead.type == head_type)
        .scalar()
    )
    return (current or 0) + 1
