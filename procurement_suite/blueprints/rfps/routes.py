"""
RFP routes: RFP lifecycle, vendor responses, technical scoring, evaluation ranking and award.

- RFP headers are editable only while draft.
- Responses are accepted only while the RFP is published and before the submission deadline;
  one response per vendor.
- Criterion scores feed total_technical_score / is_technically_qualified on the response.
- Award closes the loop: chosen response awarded, the rest rejected, RFP awarded.
"""

from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import func
from sqlalchemy.orm import selectinload

from ...audit import log_action, serialize_model
from ...evaluation import rank_rfp, resolve_weights
from ...extensions import db
from ...forms import (
    AwardForm,
    CriterionScoreForm,
    RfpForm,
    RfpResponseForm,
    RfpResponseItemForm,
    RfpResponseScoreForm,
    ScoringCriterionForm,
)
from ...models import (
    Rfp,
    RfpResponse,
    RfpResponseItem,
    RfpResponseScore,
    RfpScoringCriterion,
    Vendor,
)
from ...numbering import next_rfp_number
from ...security import roles_required
from ...seed import base_currency
from ...utils import (
    json_error,
    json_formdata,
    parse_bool_arg,
    parse_optional_int,
    transition_error,
    validation_error,
)

rfps_bp = Blueprint("rfps", __name__, url_prefix="/rfps")

RFP_MANAGERS = ("procurement_officer",)
EVALUATORS = ("evaluation_committee", "procurement_officer")
SCORING_STATUSES = ("published", "closed")


def _rfp_response(rfp: Rfp, status: int = 200):
    data = rfp.to_dict()
    data["responses"] = [r.to_dict() for r in rfp.responses]
    data["criteria"] = [c.to_dict() for c in rfp.criteria]
    return jsonify({"rfp": data}), status


def _get_response(rfp: Rfp, response_id: int) -> RfpResponse:
    return RfpResponse.query.filter_by(id=response_id, rfp_id=rfp.id).first_or_404()


def _require_draft(rfp: Rfp):
    if rfp.status != "draft":
        return json_error("Only draft RFPs can be changed.", 400)
    return None


def _require_scoring_open(rfp: Rfp):
    if rfp.status not in SCORING_STATUSES:
        return json_error("Responses can only be scored while the RFP is published or closed.", 400)
    return None


# ---------------------------------------------------------------------
# RFPs
# ---------------------------------------------------------------------
@rfps_bp.route("/")
@login_required
def list_rfps():
    q = Rfp.query

    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(Rfp.status == status)

    evaluation_type = (request.args.get("evaluation_type") or "").strip()
    if evaluation_type:
        q = q.filter(Rfp.evaluation_type == evaluation_type)

    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            Rfp.rfp_number.ilike(like)
            | Rfp.title.ilike(like)
            | func.coalesce(Rfp.description, "").ilike(like)
        )

    rfps = q.order_by(Rfp.created_at.desc(), Rfp.id.desc()).all()

    counts = dict(
        db.session.query(RfpResponse.rfp_id, func.count(RfpResponse.id))
        .group_by(RfpResponse.rfp_id)
        .all()
    )
    rows = []
    for rfp in rfps:
        data = rfp.to_dict()
        data["response_count"] = counts.get(rfp.id, 0)
        rows.append(data)
    return jsonify({"rfps": rows})


@rfps_bp.route("/<int:rfp_id>")
@login_required
def get_rfp(rfp_id: int):
    rfp = Rfp.query.options(
        selectinload(Rfp.responses).selectinload(RfpResponse.vendor),
        selectinload(Rfp.criteria),
    ).get_or_404(rfp_id)
    return _rfp_response(rfp)


def _apply_rfp_form(rfp: Rfp, form: RfpForm) -> None:
    rfp.title = form.title.data.strip()
    rfp.description = (form.description.data or "").strip() or None
    rfp.submission_deadline = form.submission_deadline.data
    rfp.currency = (form.currency.data or rfp.currency or base_currency()).upper()
    rfp.evaluation_type = form.evaluation_type.data
    rfp.technical_weight = form.technical_weight.data
    rfp.commercial_weight = form.commercial_weight.data
    rfp.enable_technical_scoring = bool(form.enable_technical_scoring.data)
    rfp.minimum_technical_score = form.minimum_technical_score.data


@rfps_bp.route("/", methods=["POST"])
@login_required
@roles_required(*RFP_MANAGERS)
def create_rfp():
    form = RfpForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    rfp = Rfp(rfp_number=next_rfp_number(), status="draft", created_by=current_user.id)
    _apply_rfp_form(rfp, form)
    db.session.add(rfp)
    db.session.flush()

    log_action(rfp, "CREATE", after=serialize_model(rfp))
    db.session.commit()
    return _rfp_response(rfp, 201)


@rfps_bp.route("/<int:rfp_id>", methods=["PUT"])
@login_required
@roles_required(*RFP_MANAGERS)
def update_rfp(rfp_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    error = _require_draft(rfp)
    if error:
        return error

    form = RfpForm(formdata=json_formdata(), obj=rfp)
    if not form.validate():
        return validation_error(form)

    before = serialize_model(rfp)
    _apply_rfp_form(rfp, form)
    db.session.flush()

    log_action(rfp, "UPDATE", before=before, after=serialize_model(rfp))
    db.session.commit()
    return _rfp_response(rfp)


@rfps_bp.route("/<int:rfp_id>", methods=["DELETE"])
@login_required
@roles_required(*RFP_MANAGERS)
def delete_rfp(rfp_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    error = _require_draft(rfp)
    if error:
        return error

    before = serialize_model(rfp)
    db.session.delete(rfp)
    db.session.flush()
    log_action(rfp, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "RFP deleted."})


def _move_rfp(rfp_id: int, new_status: str):
    rfp = Rfp.query.get_or_404(rfp_id)
    error = transition_error(rfp, new_status, "RFP")
    if error:
        return error

    before = serialize_model(rfp)
    rfp.status = new_status
    db.session.flush()
    log_action(rfp, "STATUS", before=before, after=serialize_model(rfp))
    db.session.commit()
    return _rfp_response(rfp)


@rfps_bp.route("/<int:rfp_id>/publish", methods=["POST"])
@login_required
@roles_required(*RFP_MANAGERS)
def publish_rfp(rfp_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    if rfp.submission_deadline <= datetime.utcnow():
        return json_error("The submission deadline must be in the future to publish.", 400)
    return _move_rfp(rfp_id, "published")


@rfps_bp.route("/<int:rfp_id>/close", methods=["POST"])
@login_required
@roles_required(*RFP_MANAGERS)
def close_rfp(rfp_id: int):
    return _move_rfp(rfp_id, "closed")


@rfps_bp.route("/<int:rfp_id>/cancel", methods=["POST"])
@login_required
@roles_required(*RFP_MANAGERS)
def cancel_rfp(rfp_id: int):
    return _move_rfp(rfp_id, "canceled")


# ---------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------
@rfps_bp.route("/<int:rfp_id>/responses")
@login_required
def list_responses(rfp_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    return jsonify({"responses": [r.to_dict() for r in rfp.responses]})


@rfps_bp.route("/<int:rfp_id>/responses/<int:response_id>")
@login_required
def get_response(rfp_id: int, response_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    response = _get_response(rfp, response_id)
    data = response.to_dict(with_items=True)
    data["scores"] = [s.to_dict() for s in response.scores]
    return jsonify({"response": data})


@rfps_bp.route("/<int:rfp_id>/responses", methods=["POST"])
@login_required
@roles_required(*RFP_MANAGERS)
def create_response(rfp_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    if not rfp.is_open_for_responses():
        return json_error("This RFP is not accepting responses.", 400)

    form = RfpResponseForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    vendor = db.session.get(Vendor, form.vendor_id.data)
    if vendor is None or not vendor.is_active:
        return json_error("Vendor not found or inactive.", 400)
    if RfpResponse.query.filter_by(rfp_id=rfp.id, vendor_id=vendor.id).first():
        return json_error(f"{vendor.company_name} has already responded to this RFP.", 409)

    response_number = (form.response_number.data or "").strip()
    if not response_number:
        response_number = f"{rfp.rfp_number}-R{len(rfp.responses) + 1:02d}"

    response = RfpResponse(
        vendor_id=vendor.id,
        response_number=response_number,
        currency=(form.currency.data or rfp.currency).upper(),
        delivery_timeline=(form.delivery_timeline.data or "").strip() or None,
        warranty_period=(form.warranty_period.data or "").strip() or None,
        status="submitted",
        total_bid_amount=0,
        is_technically_qualified=not rfp.enable_technical_scoring,
    )
    rfp.responses.append(response)
    db.session.flush()

    log_action(response, "CREATE", after=serialize_model(response))
    db.session.commit()
    return jsonify({"response": response.to_dict(with_items=True)}), 201


@rfps_bp.route("/<int:rfp_id>/responses/<int:response_id>/scores", methods=["PUT"])
@login_required
@roles_required(*EVALUATORS)
def score_response(rfp_id: int, response_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    error = _require_scoring_open(rfp)
    if error:
        return error
    response = _get_response(rfp, response_id)

    form = RfpResponseScoreForm(formdata=json_formdata(), obj=response)
    if not form.validate():
        return validation_error(form)

    before = serialize_model(response)
    response.technical_score = form.technical_score.data
    response.commercial_score = form.commercial_score.data
    response.total_score = form.total_score.data
    if form.status.data:
        response.status = form.status.data
    db.session.flush()

    log_action(response, "UPDATE", before=before, after=serialize_model(response))
    db.session.commit()
    return jsonify({"response": response.to_dict()})


@rfps_bp.route("/<int:rfp_id>/responses/<int:response_id>", methods=["DELETE"])
@login_required
@roles_required(*RFP_MANAGERS)
def delete_response(rfp_id: int, response_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    if not rfp.is_open_for_responses():
        return json_error("Responses can only be withdrawn while the RFP is open.", 400)
    response = _get_response(rfp, response_id)

    before = serialize_model(response)
    rfp.responses.remove(response)
    db.session.flush()
    log_action(response, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Response deleted."})


# ---------------------------------------------------------------------
# Response items (priced bid lines)
# ---------------------------------------------------------------------
def _apply_item_form(item: RfpResponseItem, form: RfpResponseItemForm) -> None:
    item.description = form.description.data.strip()
    item.quantity = form.quantity.data
    item.unit_price = form.unit_price.data
    item.brand_model = (form.brand_model.data or "").strip() or None
    item.specifications = (form.specifications.data or "").strip() or None


def _response_with_items(response: RfpResponse, status: int = 200):
    return jsonify({"response": response.to_dict(with_items=True)}), status


@rfps_bp.route("/<int:rfp_id>/responses/<int:response_id>/items", methods=["POST"])
@login_required
@roles_required(*RFP_MANAGERS)
def add_response_item(rfp_id: int, response_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    if not rfp.is_open_for_responses():
        return json_error("Bid lines can only be changed while the RFP is open.", 400)
    response = _get_response(rfp, response_id)

    form = RfpResponseItemForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    item = RfpResponseItem()
    _apply_item_form(item, form)
    response.items.append(item)
    response.recalc_bid_amount()
    db.session.flush()

    log_action(item, "CREATE", after=serialize_model(item))
    db.session.commit()
    return _response_with_items(response, 201)


@rfps_bp.route("/<int:rfp_id>/responses/<int:response_id>/items/<int:item_id>", methods=["PUT"])
@login_required
@roles_required(*RFP_MANAGERS)
def update_response_item(rfp_id: int, response_id: int, item_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    if not rfp.is_open_for_responses():
        return json_error("Bid lines can only be changed while the RFP is open.", 400)
    response = _get_response(rfp, response_id)
    item = RfpResponseItem.query.filter_by(id=item_id, response_id=response.id).first_or_404()

    form = RfpResponseItemForm(formdata=json_formdata(), obj=item)
    if not form.validate():
        return validation_error(form)

    before = serialize_model(item)
    _apply_item_form(item, form)
    response.recalc_bid_amount()
    db.session.flush()

    log_action(item, "UPDATE", before=before, after=serialize_model(item))
    db.session.commit()
    return _response_with_items(response)


@rfps_bp.route("/<int:rfp_id>/responses/<int:response_id>/items/<int:item_id>", methods=["DELETE"])
@login_required
@roles_required(*RFP_MANAGERS)
def delete_response_item(rfp_id: int, response_id: int, item_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    if not rfp.is_open_for_responses():
        return json_error("Bid lines can only be changed while the RFP is open.", 400)
    response = _get_response(rfp, response_id)
    item = RfpResponseItem.query.filter_by(id=item_id, response_id=response.id).first_or_404()

    before = serialize_model(item)
    response.items.remove(item)
    response.recalc_bid_amount()
    db.session.flush()

    log_action(item, "DELETE", before=before)
    db.session.commit()
    return _response_with_items(response)


# ---------------------------------------------------------------------
# Scoring criteria
# ---------------------------------------------------------------------
def _require_technical_scoring(rfp: Rfp):
    if not rfp.enable_technical_scoring:
        return json_error("Technical scoring is not enabled for this RFP.", 400)
    if rfp.status not in ("draft", "published"):
        return json_error("Criteria can only be changed while the RFP is draft or published.", 400)
    return None


def _apply_criterion_form(criterion: RfpScoringCriterion, form: ScoringCriterionForm) -> None:
    criterion.criterion_name = form.criterion_name.data.strip()
    criterion.criterion_type = form.criterion_type.data
    criterion.max_points = form.max_points.data
    criterion.is_required = bool(form.is_required.data)
    criterion.display_order = form.display_order.data or 0
    criterion.description = (form.description.data or "").strip() or None


def _recalc_all_technical(rfp: Rfp) -> None:
    for response in rfp.responses:
        response.recalc_technical_score()


@rfps_bp.route("/<int:rfp_id>/criteria")
@login_required
def list_criteria(rfp_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    return jsonify({"criteria": [c.to_dict() for c in rfp.criteria]})


@rfps_bp.route("/<int:rfp_id>/criteria", methods=["POST"])
@login_required
@roles_required(*RFP_MANAGERS)
def create_criterion(rfp_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    error = _require_technical_scoring(rfp)
    if error:
        return error

    form = ScoringCriterionForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    criterion = RfpScoringCriterion()
    _apply_criterion_form(criterion, form)
    rfp.criteria.append(criterion)
    db.session.flush()

    log_action(criterion, "CREATE", after=serialize_model(criterion))
    db.session.commit()
    return jsonify({"criterion": criterion.to_dict()}), 201


@rfps_bp.route("/<int:rfp_id>/criteria/<int:criterion_id>", methods=["PUT"])
@login_required
@roles_required(*RFP_MANAGERS)
def update_criterion(rfp_id: int, criterion_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    error = _require_technical_scoring(rfp)
    if error:
        return error
    criterion = RfpScoringCriterion.query.filter_by(id=criterion_id, rfp_id=rfp.id).first_or_404()

    form = ScoringCriterionForm(formdata=json_formdata(), obj=criterion)
    if not form.validate():
        return validation_error(form)

    stored = [
        value
        for score in RfpResponseScore.query.filter_by(criterion_id=criterion.id).all()
        for value in (score.auto_calculated_score, score.manual_score)
        if value is not None
    ]
    if stored and max(stored) > form.max_points.data:
        return json_error(
            "Validation failed",
            400,
            fields={"max_points": [f"Existing scores reach {max(stored):g} points; max points cannot be lower."]},
        )

    before = serialize_model(criterion)
    _apply_criterion_form(criterion, form)
    db.session.flush()

    log_action(criterion, "UPDATE", before=before, after=serialize_model(criterion))
    db.session.commit()
    return jsonify({"criterion": criterion.to_dict()})


@rfps_bp.route("/<int:rfp_id>/criteria/<int:criterion_id>", methods=["DELETE"])
@login_required
@roles_required(*RFP_MANAGERS)
def delete_criterion(rfp_id: int, criterion_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    error = _require_technical_scoring(rfp)
    if error:
        return error
    criterion = RfpScoringCriterion.query.filter_by(id=criterion_id, rfp_id=rfp.id).first_or_404()

    before = serialize_model(criterion)
    for score in RfpResponseScore.query.filter_by(criterion_id=criterion.id).all():
        score.response.scores.remove(score)
    rfp.criteria.remove(criterion)
    _recalc_all_technical(rfp)
    db.session.flush()

    log_action(criterion, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Criterion deleted."})


# ---------------------------------------------------------------------
# Criterion scores
# ---------------------------------------------------------------------
@rfps_bp.route("/<int:rfp_id>/responses/<int:response_id>/criterion-scores", methods=["PUT"])
@login_required
@roles_required(*EVALUATORS)
def save_criterion_score(rfp_id: int, response_id: int):
    """Create or update the score of one criterion for one response."""
    rfp = Rfp.query.get_or_404(rfp_id)
    if not rfp.enable_technical_scoring:
        return json_error("Technical scoring is not enabled for this RFP.", 400)
    error = _require_scoring_open(rfp)
    if error:
        return error
    response = _get_response(rfp, response_id)

    form = CriterionScoreForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    criterion = RfpScoringCriterion.query.filter_by(id=form.criterion_id.data, rfp_id=rfp.id).first()
    if criterion is None:
        return json_error("Criterion not found for this RFP.", 400)

    for label, value in (("auto_calculated_score", form.auto_calculated_score.data),
                         ("manual_score", form.manual_score.data)):
        if value is not None and value > criterion.max_points:
            return json_error(
                "Validation failed",
                400,
                fields={label: [f"Score cannot exceed {criterion.max_points:g} points."]},
            )

    score = next((s for s in response.scores if s.criterion_id == criterion.id), None)
    before = serialize_model(score) if score else None
    if score is None:
        score = RfpResponseScore(criterion_id=criterion.id)
        response.scores.append(score)

    score.submitted_value = (form.submitted_value.data or "").strip() or None
    score.auto_calculated_score = form.auto_calculated_score.data
    score.manual_score = form.manual_score.data
    score.manual_override_reason = (form.manual_override_reason.data or "").strip() or None
    score.is_approved = bool(form.is_approved.data)
    if score.is_approved:
        score.approved_by = current_user.id
        score.approved_at = datetime.utcnow()
    else:
        score.approved_by = None
        score.approved_at = None

    response.recalc_technical_score()
    db.session.flush()

    log_action(score, "UPDATE" if before else "CREATE", before=before, after=serialize_model(score))
    db.session.commit()

    data = response.to_dict()
    data["scores"] = [s.to_dict() for s in response.scores]
    return jsonify({"response": data})


# ---------------------------------------------------------------------
# Evaluation & award
# ---------------------------------------------------------------------
@rfps_bp.route("/<int:rfp_id>/evaluation")
@login_required
def evaluation(rfp_id: int):
    rfp = Rfp.query.options(selectinload(Rfp.responses).selectinload(RfpResponse.vendor)).get_or_404(rfp_id)
    qualified_only = bool(parse_bool_arg(request.args.get("qualified_only")))

    ranked = rank_rfp(rfp, qualified_only=qualified_only)
    technical_weight, commercial_weight = resolve_weights(rfp.technical_weight, rfp.commercial_weight)

    return jsonify(
        {
            "rfp_id": rfp.id,
            "evaluation_type": rfp.evaluation_type,
            "technical_weight": technical_weight,
            "commercial_weight": commercial_weight,
            "qualified_only": qualified_only,
            "responses": [row.to_dict() for row in ranked],
        }
    )


@rfps_bp.route("/<int:rfp_id>/award", methods=["POST"])
@login_required
@roles_required(*EVALUATORS)
def award_rfp(rfp_id: int):
    rfp = Rfp.query.get_or_404(rfp_id)
    form = AwardForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error = transition_error(rfp, "awarded", "RFP")
    if error:
        return error

    winner_id = parse_optional_int(form.response_id.data)
    winner = next((r for r in rfp.responses if r.id == winner_id), None)
    if winner is None:
        return json_error("The awarded response must belong to this RFP.", 400)
    if rfp.enable_technical_scoring and not winner.is_technically_qualified:
        return json_error("The awarded response is not technically qualified.", 400)

    before = serialize_model(rfp)
    for response in rfp.responses:
        response.status = "awarded" if response.id == winner.id else "rejected"
    rfp.status = "awarded"
    db.session.flush()

    log_action(rfp, "STATUS", before=before, after=serialize_model(rfp))
    db.session.commit()
    return _rfp_response(rfp)
