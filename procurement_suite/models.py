"""
Procurement Suite – Domain Models

Covers:
- Directory: Department, User, Vendor
- Budgeting: BudgetCycle, BudgetHead (income/expenditure, optional parent), BudgetAllocation
- Requisitions: ProcurementRequest + items
- Purchasing: PurchaseOrder + items, PoEmailLog
- Billing: Invoice + items
- Bidding: Rfp, RfpResponse + items, RfpScoringCriterion, RfpResponseScore
- Settings: EmailTemplate, EmailProviderSettings, StandardPoSettings, OrganizationSettings
- AuditLog

Money columns are Numeric(15, 2) and always quantized half-up to cents before they are stored.
Status columns are plain strings; allowed moves live in each model's TRANSITIONS table and are
checked by the routes before any write.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _to_decimal(value) -> Decimal:
    """Convert Numeric/float/None to Decimal safely."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value))


def _money(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _percent_of(base: Decimal, percent) -> Decimal:
    """base * percent / 100 (percent is always stored as a percent, e.g. 18 for 18%)."""
    return base * _to_decimal(percent) / Decimal("100")


def _json_value(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class SerializerMixin:
    """Column-based dict snapshot for JSON responses."""

    __serialize_exclude__: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        data = {}
        for column in self.__table__.columns:
            if column.name in self.__serialize_exclude__:
                continue
            data[column.name] = _json_value(getattr(self, column.name))
        return data


class StatusMixin:
    """Status moves allowed by a class-level TRANSITIONS table."""

    TRANSITIONS: dict[str, set[str]] = {}

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in self.TRANSITIONS.get(self.status or "", set())


# ---------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------
class Department(SerializerMixin, db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False, unique=True, index=True)
    code = db.Column(db.String(30), nullable=True, unique=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    users = db.relationship("User", back_populates="department", lazy=True)

    def __repr__(self):
        return f"<Department {self.name}>"


USER_ROLES = (
    "requester",
    "procurement_officer",
    "finance_officer",
    "evaluation_committee",
    "viewer",
)


class User(UserMixin, SerializerMixin, db.Model):
    """System login user."""

    __tablename__ = "users"
    __serialize_exclude__ = ("password_hash",)

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    full_name = db.Column(db.String(150), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    role = db.Column(db.String(40), nullable=False, default="requester", index=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    department = db.relationship("Department", back_populates="users")

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def has_role(self, *roles: str) -> bool:
        return self.is_admin or self.role in roles

    def is_read_only(self) -> bool:
        return not self.is_admin and self.role == "viewer"

    def display_name(self) -> str:
        return self.full_name or self.username

    def __repr__(self):
        return f"<User {self.username}>"


class Vendor(SerializerMixin, db.Model):
    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)

    company_name = db.Column(db.String(255), nullable=False, index=True)
    tax_id = db.Column(db.String(50), nullable=True, unique=True, index=True)
    primary_email = db.Column(db.String(255), nullable=True)
    primary_phone = db.Column(db.String(50), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<Vendor {self.company_name}>"


# ---------------------------------------------------------------------
# Budgeting
# ---------------------------------------------------------------------
class BudgetCycle(StatusMixin, SerializerMixin, db.Model):
    __tablename__ = "budget_cycles"

    PERIOD_TYPES = ("monthly", "quarterly")
    STATUSES = ("draft", "open", "closed", "archived")
    TRANSITIONS = {
        "draft": {"open"},
        "open": {"closed"},
        "closed": {"open", "archived"},
    }

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    fiscal_year = db.Column(db.Integer, nullable=False, index=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    period_type = db.Column(db.String(20), nullable=False, default="monthly")
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    allocations = db.relationship(
        "BudgetAllocation",
        back_populates="cycle",
        cascade="all, delete-orphan",
    )

    @property
    def max_period(self) -> int:
        return 4 if self.period_type == "quarterly" else 12


class BudgetHead(SerializerMixin, db.Model):
    """
    Budget head (category) of type income or expenditure.

    Sub-heads point to a main head of the same type and roll up into it in reports.
    display_order is unique per type (enforced by the database constraint below).
    """

    __tablename__ = "budget_heads"

    TYPES = ("income", "expenditure")

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    code = db.Column(db.String(30), nullable=False, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)
    type = db.Column(db.String(20), nullable=False, default="expenditure", index=True)

    is_subhead = db.Column(db.Boolean, default=False, nullable=False)
    parent_id = db.Column(
        db.Integer,
        db.ForeignKey("budget_heads.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    display_order = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    allow_department_subitems = db.Column(db.Boolean, default=False, nullable=False)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    parent = db.relationship("BudgetHead", remote_side=[id], backref=db.backref("children", lazy=True))

    __table_args__ = (
        db.UniqueConstraint("type", "display_order", name="uq_budget_heads_type_display_order"),
    )

    @property
    def rollup_head(self) -> "BudgetHead":
        """Main head this head reports under (itself for main heads)."""
        return self.parent if self.is_subhead and self.parent else self

    def __repr__(self):
        return f"<BudgetHead {self.code} {self.name}>"


class BudgetAllocation(StatusMixin, SerializerMixin, db.Model):
    __tablename__ = "budget_allocations"

    STATUSES = ("draft", "submitted", "under_review", "approved", "rejected")
    TRANSITIONS = {
        "draft": {"submitted"},
        "submitted": {"under_review", "approved", "rejected"},
        "under_review": {"approved", "rejected"},
        "rejected": {"draft"},
    }

    id = db.Column(db.Integer, primary_key=True)

    cycle_id = db.Column(
        db.Integer,
        db.ForeignKey("budget_cycles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    head_id = db.Column(db.Integer, db.ForeignKey("budget_heads.id"), nullable=False, index=True)
    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    period_number = db.Column(db.Integer, nullable=False, default=1)
    allocated_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    approved_amount = db.Column(db.Numeric(15, 2), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime, nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    cycle = db.relationship("BudgetCycle", back_populates="allocations")
    head = db.relationship("BudgetHead")
    department = db.relationship("Department")

    __table_args__ = (
        db.UniqueConstraint(
            "cycle_id", "head_id", "department_id", "period_number",
            name="uq_budget_allocations_slot",
        ),
    )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["fiscal_year"] = self.cycle.fiscal_year if self.cycle else None
        data["head_name"] = self.head.name if self.head else None
        data["head_type"] = self.head.type if self.head else None
        data["department_name"] = self.department.name if self.department else None
        return data


# ---------------------------------------------------------------------
# Procurement requests
# ---------------------------------------------------------------------
class ProcurementRequest(StatusMixin, SerializerMixin, db.Model):
    __tablename__ = "procurement_requests"

    PRIORITIES = ("low", "medium", "high", "urgent")
    STATUSES = ("draft", "submitted", "in_review", "approved", "rejected", "completed", "canceled")
    TRANSITIONS = {
        "draft": {"submitted", "canceled"},
        "submitted": {"in_review", "approved", "rejected", "canceled"},
        "in_review": {"approved", "rejected", "canceled"},
        "approved": {"completed", "canceled"},
    }

    id = db.Column(db.Integer, primary_key=True)
    request_number = db.Column(db.String(30), nullable=False, unique=True, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    requester_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    date_created = db.Column(db.Date, default=date.today, nullable=False)
    date_needed = db.Column(db.Date, nullable=False)
    priority = db.Column(db.String(20), nullable=False, default="medium", index=True)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)
    estimated_value = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    department = db.relationship("Department")
    requester = db.relationship("User")

    items = db.relationship(
        "ProcurementRequestItem",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ProcurementRequestItem.id",
    )

    def recalc_totals(self):
        total = Decimal("0.00")
        for item in self.items:
            total += _to_decimal(item.quantity) * _to_decimal(item.estimated_price)
        self.estimated_value = _money(total)

    def to_dict(self, with_items: bool = False) -> dict:
        data = super().to_dict()
        data["department_name"] = self.department.name if self.department else None
        data["requester_name"] = self.requester.display_name() if self.requester else None
        if with_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ProcurementRequestItem(SerializerMixin, db.Model):
    __tablename__ = "procurement_request_items"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer,
        db.ForeignKey("procurement_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.Numeric(12, 2), nullable=False, default=1)
    estimated_price = db.Column(db.Numeric(15, 2), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    request = db.relationship("ProcurementRequest", back_populates="items")


# ---------------------------------------------------------------------
# Purchase orders
# ---------------------------------------------------------------------
class PurchaseOrder(StatusMixin, SerializerMixin, db.Model):
    __tablename__ = "purchase_orders"

    STATUSES = ("draft", "pending_approval", "approved", "sent", "completed", "canceled")
    TRANSITIONS = {
        "draft": {"pending_approval", "canceled"},
        "pending_approval": {"approved", "draft", "canceled"},
        "approved": {"sent", "canceled"},
        "sent": {"completed", "canceled"},
    }

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(30), nullable=False, unique=True, index=True)

    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False, index=True)
    procurement_request_id = db.Column(
        db.Integer,
        db.ForeignKey("procurement_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    status = db.Column(db.String(30), nullable=False, default="draft", index=True)
    order_date = db.Column(db.Date, default=date.today, nullable=False)
    expected_delivery_date = db.Column(db.Date, nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")

    terms_and_conditions = db.Column(db.Text, nullable=True)
    specific_instructions = db.Column(db.Text, nullable=True)

    subtotal_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    total_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    vendor = db.relationship("Vendor")
    procurement_request = db.relationship("ProcurementRequest")

    items = db.relationship(
        "PurchaseOrderItem",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderItem.id",
    )
    email_logs = db.relationship(
        "PoEmailLog",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="PoEmailLog.sent_at.desc()",
    )

    def recalc_totals(self):
        subtotal = Decimal("0.00")
        tax = Decimal("0.00")
        for item in self.items:
            item.recalc()
            subtotal += _to_decimal(item.total_price)
            tax += _to_decimal(item.tax_amount)
        self.subtotal_amount = _money(subtotal)
        self.tax_amount = _money(tax)
        self.total_amount = _money(subtotal + tax)

    def to_dict(self, with_items: bool = False) -> dict:
        data = super().to_dict()
        data["vendor_name"] = self.vendor.company_name if self.vendor else None
        if with_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class PurchaseOrderItem(SerializerMixin, db.Model):
    __tablename__ = "purchase_order_items"

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(
        db.Integer,
        db.ForeignKey("purchase_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.Numeric(12, 2), nullable=False, default=1)
    unit_price = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(6, 2), nullable=False, default=Decimal("0.00"))

    total_price = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))

    purchase_order = db.relationship("PurchaseOrder", back_populates="items")

    def recalc(self):
        base = _money(_to_decimal(self.quantity) * _to_decimal(self.unit_price))
        self.total_price = base
        self.tax_amount = _money(_percent_of(base, self.tax_rate))


class PoEmailLog(SerializerMixin, db.Model):
    __tablename__ = "po_email_logs"

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(
        db.Integer,
        db.ForeignKey("purchase_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    recipient_email = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="sent")
    error_message = db.Column(db.Text, nullable=True)
    sent_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    purchase_order = db.relationship("PurchaseOrder", back_populates="email_logs")


# ---------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------
class Invoice(StatusMixin, SerializerMixin, db.Model):
    __tablename__ = "invoices"

    STATUSES = ("submitted", "under_approval", "approved", "disputed", "rejected", "paid")
    TRANSITIONS = {
        "submitted": {"under_approval", "approved", "disputed", "rejected"},
        "under_approval": {"approved", "disputed", "rejected"},
        "disputed": {"submitted"},
        "approved": {"paid"},
    }
    EDITABLE_STATUSES = ("submitted", "disputed")

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(50), nullable=False, unique=True, index=True)

    purchase_order_id = db.Column(
        db.Integer,
        db.ForeignKey("purchase_orders.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False, index=True)

    invoice_date = db.Column(db.Date, default=date.today, nullable=False)
    due_date = db.Column(db.Date, nullable=True)
    currency = db.Column(db.String(3), nullable=True)

    subtotal_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    discount_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    total_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))

    status = db.Column(db.String(30), nullable=False, default="submitted", index=True)

    is_non_po_invoice = db.Column(db.Boolean, default=False, nullable=False)
    non_po_justification = db.Column(db.Text, nullable=True)

    disputed_reason = db.Column(db.Text, nullable=True)
    disputed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    disputed_at = db.Column(db.DateTime, nullable=True)
    rejected_reason = db.Column(db.Text, nullable=True)
    rejected_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)

    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)

    payment_date = db.Column(db.Date, nullable=True)
    payment_reference = db.Column(db.String(120), nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)
    payment_notes = db.Column(db.Text, nullable=True)
    paid_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    vendor = db.relationship("Vendor")
    purchase_order = db.relationship("PurchaseOrder")

    items = db.relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.id",
    )

    def recalc_totals(self):
        """
        Recompute header totals from the items.

        total_amount is the sum of the item finals, so the persisted total always equals the
        sum of per-item totals (each item is rounded to cents once).
        """
        subtotal = Decimal("0.00")
        discount = Decimal("0.00")
        tax = Decimal("0.00")
        total = Decimal("0.00")
        for item in self.items:
            item.recalc()
            subtotal += _to_decimal(item.total_price)
            discount += _to_decimal(item.discount_amount)
            tax += _to_decimal(item.tax_amount)
            total += _to_decimal(item.final_amount)

        self.subtotal_amount = _money(subtotal)
        self.discount_amount = _money(discount)
        self.tax_amount = _money(tax)
        self.total_amount = _money(total)

    def to_dict(self, with_items: bool = False) -> dict:
        data = super().to_dict()
        data["vendor_name"] = self.vendor.company_name if self.vendor else None
        data["po_number"] = self.purchase_order.po_number if self.purchase_order else None
        if with_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class InvoiceItem(SerializerMixin, db.Model):
    __tablename__ = "invoice_items"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer,
        db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    po_item_id = db.Column(
        db.Integer,
        db.ForeignKey("purchase_order_items.id", ondelete="SET NULL"),
        nullable=True,
    )

    description = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.Numeric(12, 2), nullable=False, default=1)
    unit_price = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(6, 2), nullable=False, default=Decimal("0.00"))
    discount_rate = db.Column(db.Numeric(6, 2), nullable=False, default=Decimal("0.00"))

    total_price = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    discount_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    final_amount = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))

    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    invoice = db.relationship("Invoice", back_populates="items")

    def recalc(self):
        """Discount applies to the line price; tax applies after discount."""
        base = _to_decimal(self.quantity) * _to_decimal(self.unit_price)
        discount = _percent_of(base, self.discount_rate)
        tax = _percent_of(base - discount, self.tax_rate)

        self.total_price = _money(base)
        self.discount_amount = _money(discount)
        self.tax_amount = _money(tax)
        self.final_amount = _money(base - discount + tax)


# ---------------------------------------------------------------------
# RFPs
# ---------------------------------------------------------------------
EVALUATION_TYPES = ("qcbs", "price_l1", "technical_l1")


class Rfp(StatusMixin, SerializerMixin, db.Model):
    __tablename__ = "rfps"

    STATUSES = ("draft", "published", "closed", "awarded", "canceled")
    TRANSITIONS = {
        "draft": {"published", "canceled"},
        "published": {"closed", "canceled"},
        "closed": {"awarded"},
    }

    id = db.Column(db.Integer, primary_key=True)
    rfp_number = db.Column(db.String(30), nullable=False, unique=True, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)
    submission_deadline = db.Column(db.DateTime, nullable=False, index=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")

    evaluation_type = db.Column(db.String(20), nullable=False, default="qcbs")
    technical_weight = db.Column(db.Integer, nullable=True)
    commercial_weight = db.Column(db.Integer, nullable=True)

    enable_technical_scoring = db.Column(db.Boolean, default=False, nullable=False)
    minimum_technical_score = db.Column(db.Float, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    responses = db.relationship(
        "RfpResponse",
        back_populates="rfp",
        cascade="all, delete-orphan",
        order_by="(RfpResponse.submitted_at, RfpResponse.id)",
    )
    criteria = db.relationship(
        "RfpScoringCriterion",
        back_populates="rfp",
        cascade="all, delete-orphan",
        order_by="(RfpScoringCriterion.display_order, RfpScoringCriterion.id)",
    )

    def is_open_for_responses(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        return self.status == "published" and now <= self.submission_deadline


class RfpResponse(SerializerMixin, db.Model):
    __tablename__ = "rfp_responses"

    STATUSES = ("submitted", "under_evaluation", "shortlisted", "awarded", "rejected")

    id = db.Column(db.Integer, primary_key=True)
    rfp_id = db.Column(db.Integer, db.ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False, index=True)

    response_number = db.Column(db.String(40), nullable=True, index=True)
    status = db.Column(db.String(30), nullable=False, default="submitted", index=True)

    technical_score = db.Column(db.Float, nullable=True)
    commercial_score = db.Column(db.Float, nullable=True)
    total_score = db.Column(db.Float, nullable=True)

    total_bid_amount = db.Column(db.Numeric(15, 2), nullable=True)
    currency = db.Column(db.String(3), nullable=True)
    delivery_timeline = db.Column(db.String(120), nullable=True)
    warranty_period = db.Column(db.String(120), nullable=True)

    total_technical_score = db.Column(db.Float, nullable=True)
    is_technically_qualified = db.Column(db.Boolean, default=False, nullable=False)

    submitted_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    rfp = db.relationship("Rfp", back_populates="responses")
    vendor = db.relationship("Vendor")

    items = db.relationship(
        "RfpResponseItem",
        back_populates="response",
        cascade="all, delete-orphan",
        order_by="RfpResponseItem.id",
    )
    scores = db.relationship(
        "RfpResponseScore",
        back_populates="response",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("rfp_id", "vendor_id", name="uq_rfp_responses_rfp_vendor"),
    )

    def recalc_bid_amount(self):
        total = Decimal("0.00")
        for item in self.items:
            item.recalc()
            total += _to_decimal(item.total_price)
        self.total_bid_amount = _money(total)

    def recalc_technical_score(self):
        """
        Sum of criterion scores (approved manual override wins over the automatic score).

        Qualification holds when the RFP sets no minimum or the total reaches it.
        """
        total = 0.0
        for score in self.scores:
            total += score.effective_score
        self.total_technical_score = round(total, 2)

        minimum = self.rfp.minimum_technical_score if self.rfp else None
        self.is_technically_qualified = minimum is None or self.total_technical_score >= minimum

    def to_dict(self, with_items: bool = False) -> dict:
        data = super().to_dict()
        data["vendor_name"] = self.vendor.company_name if self.vendor else None
        if with_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class RfpResponseItem(SerializerMixin, db.Model):
    __tablename__ = "rfp_response_items"

    id = db.Column(db.Integer, primary_key=True)
    response_id = db.Column(
        db.Integer,
        db.ForeignKey("rfp_responses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.Numeric(12, 2), nullable=False, default=1)
    unit_price = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    brand_model = db.Column(db.String(255), nullable=True)
    specifications = db.Column(db.Text, nullable=True)

    response = db.relationship("RfpResponse", back_populates="items")

    def recalc(self):
        self.total_price = _money(_to_decimal(self.quantity) * _to_decimal(self.unit_price))


class RfpScoringCriterion(SerializerMixin, db.Model):
    __tablename__ = "rfp_scoring_criteria"

    CRITERION_TYPES = ("numerical", "multiple_choice", "yes_no")

    id = db.Column(db.Integer, primary_key=True)
    rfp_id = db.Column(db.Integer, db.ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True)
    criterion_name = db.Column(db.String(255), nullable=False)
    criterion_type = db.Column(db.String(30), nullable=False, default="numerical")
    max_points = db.Column(db.Float, nullable=False)
    is_required = db.Column(db.Boolean, default=True, nullable=False)
    display_order = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    rfp = db.relationship("Rfp", back_populates="criteria")


class RfpResponseScore(SerializerMixin, db.Model):
    __tablename__ = "rfp_response_scores"

    id = db.Column(db.Integer, primary_key=True)
    response_id = db.Column(
        db.Integer,
        db.ForeignKey("rfp_responses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    criterion_id = db.Column(
        db.Integer,
        db.ForeignKey("rfp_scoring_criteria.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    submitted_value = db.Column(db.Text, nullable=True)
    auto_calculated_score = db.Column(db.Float, nullable=True)
    manual_score = db.Column(db.Float, nullable=True)
    manual_override_reason = db.Column(db.Text, nullable=True)
    is_approved = db.Column(db.Boolean, default=False, nullable=False)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    response = db.relationship("RfpResponse", back_populates="scores")
    criterion = db.relationship("RfpScoringCriterion")

    __table_args__ = (
        db.UniqueConstraint("response_id", "criterion_id", name="uq_rfp_response_scores_pair"),
    )

    @property
    def effective_score(self) -> float:
        if self.manual_score is not None and self.is_approved:
            return float(self.manual_score)
        return float(self.auto_calculated_score or 0)


# ---------------------------------------------------------------------
# Email & organization settings
# ---------------------------------------------------------------------
class EmailTemplate(SerializerMixin, db.Model):
    __tablename__ = "email_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)
    template_key = db.Column(db.String(80), nullable=False, unique=True, index=True)
    category = db.Column(db.String(50), nullable=False, default="general", index=True)
    subject_template = db.Column(db.Text, nullable=False)
    body_template = db.Column(db.Text, nullable=False)
    available_variables = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    is_system = db.Column(db.Boolean, default=False, nullable=False)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


EMAIL_PROVIDER_PRESETS = {
    "gmail": ("smtp.gmail.com", 587, True),
    "google_workspace": ("smtp.gmail.com", 587, True),
    "outlook": ("smtp-mail.outlook.com", 587, True),
    "m365": ("smtp.office365.com", 587, True),
    "custom_smtp": None,
}


class EmailProviderSettings(SerializerMixin, db.Model):
    """Outbound SMTP relay configuration. At most one row is active."""

    __tablename__ = "email_provider_settings"
    __serialize_exclude__ = ("password",)

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(30), nullable=False, default="custom_smtp")
    from_email = db.Column(db.String(255), nullable=False)
    from_name = db.Column(db.String(150), nullable=True)
    smtp_host = db.Column(db.String(255), nullable=True)
    smtp_port = db.Column(db.Integer, nullable=True)
    smtp_secure = db.Column(db.Boolean, default=True, nullable=False)
    username = db.Column(db.String(255), nullable=True)
    password = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def apply_preset(self):
        preset = EMAIL_PROVIDER_PRESETS.get(self.provider)
        if preset:
            self.smtp_host, self.smtp_port, self.smtp_secure = preset

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["has_password"] = bool(self.password)
        return data


DEFAULT_PO_EMAIL_SUBJECT = "Purchase Order - {{po_number}}"
DEFAULT_PO_EMAIL_BODY = """Dear {{vendor_name}},

Please find attached Purchase Order {{po_number}} for your review and processing.

PO Details:
- PO Number: {{po_number}}
- Total Amount: {{total_amount}} {{currency}}
- Expected Delivery: {{expected_delivery}}

Please acknowledge receipt of this PO and confirm the delivery schedule.

Best regards,
{{sender_name}}"""


class StandardPoSettings(SerializerMixin, db.Model):
    __tablename__ = "standard_po_settings"

    id = db.Column(db.Integer, primary_key=True)
    standard_terms_and_conditions = db.Column(db.Text, nullable=True)
    standard_specific_instructions = db.Column(db.Text, nullable=True)
    email_template_subject = db.Column(db.Text, nullable=False, default=DEFAULT_PO_EMAIL_SUBJECT)
    email_template_body = db.Column(db.Text, nullable=False, default=DEFAULT_PO_EMAIL_BODY)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class OrganizationSettings(SerializerMixin, db.Model):
    __tablename__ = "organization_settings"

    id = db.Column(db.Integer, primary_key=True)
    organization_name = db.Column(db.String(255), nullable=False)
    base_currency = db.Column(db.String(3), nullable=False, default="USD")
    date_format = db.Column(db.String(30), nullable=False, default="YYYY-MM-DD")
    fiscal_year_start = db.Column(db.String(10), nullable=False, default="01-01")
    time_zone = db.Column(db.String(64), nullable=False, default="UTC")
    logo_url = db.Column(db.String(500), nullable=True)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ---------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------
class AuditLog(SerializerMixin, db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(150), nullable=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    action = db.Column(db.String(20), nullable=False, index=True)

    before_data = db.Column(db.Text, nullable=True)
    after_data = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
