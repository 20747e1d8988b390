"""
Request validation schemas (Flask-WTF / WTForms).

Routes build forms from the JSON body:

    form = VendorForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

CSRF for JSON clients is enforced globally by CSRFProtect (X-CSRFToken header), so the
per-form hidden token is disabled on JsonForm.
"""

from __future__ import annotations

from flask_wtf import FlaskForm
from wtforms import (
    BooleanField,
    DateField,
    DateTimeField,
    DecimalField,
    FloatField,
    IntegerField,
    PasswordField,
    SelectField,
    StringField,
    TextAreaField,
)
from wtforms.validators import (
    DataRequired,
    InputRequired,
    Length,
    NumberRange,
    Optional,
    Regexp,
    ValidationError,
)

from .models import (
    EMAIL_PROVIDER_PRESETS,
    EVALUATION_TYPES,
    USER_ROLES,
    BudgetCycle,
    BudgetHead,
    ProcurementRequest,
    RfpScoringCriterion,
)

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
DATETIME_FORMATS = ["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M"]


def _choices(values) -> list[tuple[str, str]]:
    return [(v, v) for v in values]


def _email(message: str = "Invalid email address."):
    return Regexp(EMAIL_PATTERN, message=message)


class OptionalBooleanField(BooleanField):
    """BooleanField that keeps its default / object value when the key is absent."""

    def process_formdata(self, valuelist):
        if valuelist:
            super().process_formdata(valuelist)


class JsonForm(FlaskForm):
    class Meta:
        csrf = False


# ---------------------------------------------------------------------
# Auth & directory
# ---------------------------------------------------------------------
class LoginForm(JsonForm):
    username = StringField(validators=[DataRequired()])
    password = PasswordField(validators=[DataRequired()])


class UserForm(JsonForm):
    username = StringField(validators=[DataRequired(), Length(max=80)])
    password = PasswordField(validators=[Optional(), Length(min=6, max=128)])
    full_name = StringField(validators=[Optional(), Length(max=150)])
    email = StringField(validators=[Optional(), _email()])
    role = SelectField(choices=_choices(USER_ROLES), default="requester")
    is_admin = OptionalBooleanField(default=False)
    is_active = OptionalBooleanField(default=True)
    department_id = IntegerField(validators=[Optional()])


class DepartmentForm(JsonForm):
    name = StringField(validators=[DataRequired(), Length(max=150)])
    code = StringField(validators=[Optional(), Length(max=30)])
    is_active = OptionalBooleanField(default=True)


class VendorForm(JsonForm):
    company_name = StringField(validators=[DataRequired(), Length(max=255)])
    tax_id = StringField(validators=[Optional(), Length(max=50)])
    primary_email = StringField(validators=[Optional(), _email()])
    primary_phone = StringField(validators=[Optional(), Length(max=50)])
    address = StringField(validators=[Optional(), Length(max=255)])
    is_active = OptionalBooleanField(default=True)


# ---------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------
class BudgetCycleForm(JsonForm):
    name = StringField(validators=[DataRequired(), Length(max=150)])
    fiscal_year = IntegerField(validators=[InputRequired(), NumberRange(min=1900, max=2999)])
    start_date = DateField(validators=[InputRequired()])
    end_date = DateField(validators=[InputRequired()])
    period_type = SelectField(choices=_choices(BudgetCycle.PERIOD_TYPES), default="monthly")

    def validate_end_date(self, field):
        if self.start_date.data and field.data and field.data < self.start_date.data:
            raise ValidationError("End date must be on or after the start date.")


class BudgetHeadForm(JsonForm):
    name = StringField(validators=[DataRequired(), Length(max=150)])
    code = StringField(validators=[Optional(), Length(max=30)])
    description = TextAreaField(validators=[Optional()])
    type = SelectField(choices=_choices(BudgetHead.TYPES), default="expenditure")
    is_subhead = OptionalBooleanField(default=False)
    parent_id = IntegerField(validators=[Optional()])
    display_order = IntegerField(validators=[Optional(), NumberRange(min=1, message="Display order must be at least 1.")])
    is_active = OptionalBooleanField(default=True)
    allow_department_subitems = OptionalBooleanField(default=False)

    def validate_is_subhead(self, field):
        if field.data and not self.parent_id.data:
            raise ValidationError("A sub-head requires a parent head.")


class BudgetAllocationForm(JsonForm):
    cycle_id = IntegerField(validators=[InputRequired()])
    head_id = IntegerField(validators=[InputRequired()])
    department_id = IntegerField(validators=[Optional()])
    period_number = IntegerField(validators=[InputRequired(), NumberRange(min=1, max=12)])
    allocated_amount = DecimalField(validators=[InputRequired(), NumberRange(min=0)])
    notes = TextAreaField(validators=[Optional()])


class AllocationReviewForm(JsonForm):
    approved_amount = DecimalField(validators=[Optional(), NumberRange(min=0)])
    notes = TextAreaField(validators=[Optional()])


# ---------------------------------------------------------------------
# Procurement requests
# ---------------------------------------------------------------------
class ProcurementRequestForm(JsonForm):
    title = StringField(validators=[DataRequired(), Length(max=255)])
    description = TextAreaField(validators=[Optional()])
    department_id = IntegerField(validators=[Optional()])
    date_needed = DateField(validators=[InputRequired()])
    priority = SelectField(choices=_choices(ProcurementRequest.PRIORITIES), default="medium")


class RequestItemForm(JsonForm):
    description = TextAreaField(validators=[DataRequired()])
    quantity = DecimalField(validators=[InputRequired(), NumberRange(min=0.01, message="Quantity must be positive.")])
    estimated_price = DecimalField(validators=[Optional(), NumberRange(min=0)])


# ---------------------------------------------------------------------
# Purchase orders & invoices
# ---------------------------------------------------------------------
class PurchaseOrderForm(JsonForm):
    vendor_id = IntegerField(validators=[InputRequired()])
    procurement_request_id = IntegerField(validators=[Optional()])
    order_date = DateField(validators=[Optional()])
    expected_delivery_date = DateField(validators=[Optional()])
    currency = StringField(validators=[Optional(), Length(min=3, max=3)])
    terms_and_conditions = TextAreaField(validators=[Optional()])
    specific_instructions = TextAreaField(validators=[Optional()])


class PurchaseOrderItemForm(JsonForm):
    description = TextAreaField(validators=[DataRequired()])
    quantity = DecimalField(validators=[InputRequired(), NumberRange(min=0.01, message="Quantity must be positive.")])
    unit_price = DecimalField(validators=[InputRequired(), NumberRange(min=0)])
    tax_rate = DecimalField(default=0, validators=[Optional(), NumberRange(min=0, max=100)])


class SendPurchaseOrderForm(JsonForm):
    recipient_email = StringField(validators=[Optional(), _email()])


class InvoiceForm(JsonForm):
    invoice_number = StringField(validators=[Optional(), Length(max=50)])
    purchase_order_id = IntegerField(validators=[Optional()])
    vendor_id = IntegerField(validators=[InputRequired()])
    invoice_date = DateField(validators=[InputRequired()])
    due_date = DateField(validators=[Optional()])
    currency = StringField(validators=[Optional(), Length(min=3, max=3)])
    is_non_po_invoice = OptionalBooleanField(default=False)
    non_po_justification = TextAreaField(validators=[Optional()])
    notes = TextAreaField(validators=[Optional()])

    def validate_is_non_po_invoice(self, field):
        if field.data and not (self.non_po_justification.data or "").strip():
            raise ValidationError("A justification is required for non-PO invoices.")

    def validate_due_date(self, field):
        if field.data and self.invoice_date.data and field.data < self.invoice_date.data:
            raise ValidationError("Due date must be on or after the invoice date.")


class InvoiceItemForm(JsonForm):
    description = TextAreaField(validators=[DataRequired()])
    po_item_id = IntegerField(validators=[Optional()])
    quantity = DecimalField(validators=[InputRequired(), NumberRange(min=0.01, message="Quantity must be positive.")])
    unit_price = DecimalField(validators=[InputRequired(), NumberRange(min=0)])
    tax_rate = DecimalField(default=0, validators=[Optional(), NumberRange(min=0, max=100)])
    discount_rate = DecimalField(default=0, validators=[Optional(), NumberRange(min=0, max=100)])
    notes = TextAreaField(validators=[Optional()])


class ReasonForm(JsonForm):
    reason = TextAreaField(validators=[DataRequired(message="A reason is required.")])


class PaymentForm(JsonForm):
    payment_date = DateField(validators=[InputRequired()])
    payment_reference = StringField(validators=[Optional(), Length(max=120)])
    payment_method = StringField(validators=[Optional(), Length(max=50)])
    payment_notes = TextAreaField(validators=[Optional()])


# ---------------------------------------------------------------------
# RFPs
# ---------------------------------------------------------------------
class RfpForm(JsonForm):
    title = StringField(validators=[DataRequired(), Length(max=255)])
    description = TextAreaField(validators=[Optional()])
    submission_deadline = DateTimeField(format=DATETIME_FORMATS, validators=[InputRequired()])
    currency = StringField(validators=[Optional(), Length(min=3, max=3)])
    evaluation_type = SelectField(choices=_choices(EVALUATION_TYPES), default="qcbs")
    technical_weight = IntegerField(validators=[Optional(), NumberRange(min=0, max=100)])
    commercial_weight = IntegerField(validators=[Optional(), NumberRange(min=0, max=100)])
    enable_technical_scoring = OptionalBooleanField(default=False)
    minimum_technical_score = FloatField(validators=[Optional(), NumberRange(min=0)])

    def validate_evaluation_type(self, field):
        if field.data != "qcbs":
            return
        tech = self.technical_weight.data
        comm = self.commercial_weight.data
        if tech is None and comm is None:
            return
        if (tech or 0) + (comm or 0) != 100:
            raise ValidationError("Technical and commercial weights must sum to 100.")


class RfpResponseForm(JsonForm):
    vendor_id = IntegerField(validators=[InputRequired()])
    response_number = StringField(validators=[Optional(), Length(max=40)])
    currency = StringField(validators=[Optional(), Length(min=3, max=3)])
    delivery_timeline = StringField(validators=[Optional(), Length(max=120)])
    warranty_period = StringField(validators=[Optional(), Length(max=120)])


class RfpResponseScoreForm(JsonForm):
    technical_score = FloatField(validators=[Optional(), NumberRange(min=0, max=100)])
    commercial_score = FloatField(validators=[Optional(), NumberRange(min=0, max=100)])
    total_score = FloatField(validators=[Optional(), NumberRange(min=0, max=100)])
    status = SelectField(
        choices=_choices(("submitted", "under_evaluation", "shortlisted")),
        validators=[Optional()],
        validate_choice=False,
    )

    def validate_status(self, field):
        if field.data and field.data not in ("submitted", "under_evaluation", "shortlisted"):
            raise ValidationError("Use the award endpoint to award or reject responses.")


class RfpResponseItemForm(JsonForm):
    description = TextAreaField(validators=[DataRequired()])
    quantity = DecimalField(validators=[InputRequired(), NumberRange(min=0.01, message="Quantity must be positive.")])
    unit_price = DecimalField(validators=[InputRequired(), NumberRange(min=0)])
    brand_model = StringField(validators=[Optional(), Length(max=255)])
    specifications = TextAreaField(validators=[Optional()])


class ScoringCriterionForm(JsonForm):
    criterion_name = StringField(validators=[DataRequired(), Length(max=255)])
    criterion_type = SelectField(choices=_choices(RfpScoringCriterion.CRITERION_TYPES), default="numerical")
    max_points = FloatField(validators=[InputRequired(), NumberRange(min=0.01, message="Max points must be positive.")])
    is_required = OptionalBooleanField(default=True)
    display_order = IntegerField(default=0, validators=[Optional(), NumberRange(min=0)])
    description = TextAreaField(validators=[Optional()])


class CriterionScoreForm(JsonForm):
    criterion_id = IntegerField(validators=[InputRequired()])
    submitted_value = StringField(validators=[Optional()])
    auto_calculated_score = FloatField(validators=[Optional(), NumberRange(min=0)])
    manual_score = FloatField(validators=[Optional(), NumberRange(min=0)])
    manual_override_reason = TextAreaField(validators=[Optional()])
    is_approved = OptionalBooleanField(default=False)

    def validate_manual_score(self, field):
        if field.data is not None and not (self.manual_override_reason.data or "").strip():
            raise ValidationError("A reason is required for a manual score override.")


class AwardForm(JsonForm):
    response_id = IntegerField(validators=[InputRequired()])


# ---------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------
class EmailTemplateForm(JsonForm):
    name = StringField(validators=[DataRequired(), Length(max=150)])
    description = TextAreaField(validators=[Optional()])
    template_key = StringField(
        validators=[
            DataRequired(),
            Length(max=80),
            Regexp(r"^[a-z0-9_]+$", message="Use lowercase letters, digits and underscores only."),
        ]
    )
    category = StringField(default="general", validators=[Optional(), Length(max=50)])
    subject_template = TextAreaField(validators=[DataRequired()])
    body_template = TextAreaField(validators=[DataRequired()])
    is_active = OptionalBooleanField(default=True)


class EmailProviderForm(JsonForm):
    provider = SelectField(choices=_choices(EMAIL_PROVIDER_PRESETS.keys()), default="custom_smtp")
    from_email = StringField(validators=[DataRequired(), _email()])
    from_name = StringField(validators=[Optional(), Length(max=150)])
    smtp_host = StringField(validators=[Optional(), Length(max=255)])
    smtp_port = IntegerField(validators=[Optional(), NumberRange(min=1, max=65535)])
    smtp_secure = OptionalBooleanField(default=True)
    username = StringField(validators=[Optional(), Length(max=255)])
    password = PasswordField(validators=[Optional(), Length(max=255)])
    is_active = OptionalBooleanField(default=True)

    def validate_provider(self, field):
        if field.data != "custom_smtp":
            return
        if not (self.smtp_host.data or "").strip() or not self.smtp_port.data:
            raise ValidationError("SMTP host and port are required for a custom SMTP provider.")


class SendTestEmailForm(JsonForm):
    to_email = StringField(validators=[DataRequired(), _email()])


class PoSettingsForm(JsonForm):
    standard_terms_and_conditions = TextAreaField(validators=[Optional()])
    standard_specific_instructions = TextAreaField(validators=[Optional()])
    email_template_subject = TextAreaField(validators=[DataRequired()])
    email_template_body = TextAreaField(validators=[DataRequired()])


class OrganizationSettingsForm(JsonForm):
    organization_name = StringField(validators=[DataRequired(), Length(max=255)])
    base_currency = StringField(validators=[DataRequired(), Length(min=3, max=3)])
    date_format = StringField(default="YYYY-MM-DD", validators=[Optional(), Length(max=30)])
    fiscal_year_start = StringField(
        default="01-01",
        validators=[Optional(), Regexp(r"^(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])$", message="Use MM-DD.")],
    )
    time_zone = StringField(default="UTC", validators=[Optional(), Length(max=64)])
    logo_url = StringField(validators=[Optional(), Length(max=500)])
