"""
Integration tests for /rfps: lifecycle, vendor responses, technical scoring, evaluation and award.
"""
from datetime import date, datetime, timedelta

import pytest

from procurement_suite.extensions import db
from procurement_suite.models import Rfp


def _deadline(days=7):
    return (datetime.utcnow() + timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%S")


@pytest.fixture
def published_rfp(procurement_client):
    r = procurement_client.post(
        "/rfps/",
        json={
            "title": "Office furniture",
            "submission_deadline": _deadline(),
            "evaluation_type": "qcbs",
            "technical_weight": 70,
            "commercial_weight": 30,
        },
    )
    assert r.status_code == 201, r.get_json()
    rfp_id = r.get_json()["rfp"]["id"]
    assert procurement_client.post(f"/rfps/{rfp_id}/publish").status_code == 200
    return rfp_id


@pytest.fixture
def two_responses(procurement_client, committee_client, make_vendor, published_rfp):
    ids = []
    for name, technical, commercial in (("Beta Desks", 78, 95), ("Alpha Chairs", 85, 90)):
        vendor_id = make_vendor(name, f"{name.split()[0].lower()}@example.test")
        r = procurement_client.post(f"/rfps/{published_rfp}/responses", json={"vendor_id": vendor_id})
        assert r.status_code == 201, r.get_json()
        response_id = r.get_json()["response"]["id"]
        r = committee_client.put(
            f"/rfps/{published_rfp}/responses/{response_id}/scores",
            json={"technical_score": technical, "commercial_score": commercial},
        )
        assert r.status_code == 200, r.get_json()
        ids.append(response_id)
    return ids


class TestRfpLifecycle:

    def test_number_and_draft_status(self, procurement_client):
        r = procurement_client.post("/rfps/", json={"title": "Laptops", "submission_deadline": _deadline()})
        rfp = r.get_json()["rfp"]
        assert rfp["rfp_number"] == f"RFP-{date.today().year}-0001"
        assert rfp["status"] == "draft"
        assert rfp["evaluation_type"] == "qcbs"

    def test_qcbs_weights_must_sum_to_100(self, procurement_client):
        r = procurement_client.post(
            "/rfps/",
            json={"title": "X", "submission_deadline": _deadline(), "technical_weight": 60, "commercial_weight": 30},
        )
        assert r.status_code == 400
        assert "evaluation_type" in r.get_json()["fields"]

    def test_edits_only_in_draft(self, procurement_client, published_rfp):
        r = procurement_client.put(
            f"/rfps/{published_rfp}", json={"title": "Changed", "submission_deadline": _deadline()}
        )
        assert r.status_code == 400

    def test_invalid_transition(self, procurement_client, published_rfp):
        assert procurement_client.post(f"/rfps/{published_rfp}/publish").status_code == 400
        assert procurement_client.post(f"/rfps/{published_rfp}/close").status_code == 200
        assert procurement_client.post(f"/rfps/{published_rfp}/cancel").status_code == 400

    def test_requester_cannot_create(self, requester_client):
        r = requester_client.post("/rfps/", json={"title": "X", "submission_deadline": _deadline()})
        assert r.status_code == 403


class TestResponses:

    def test_one_response_per_vendor(self, procurement_client, vendor, published_rfp):
        assert procurement_client.post(f"/rfps/{published_rfp}/responses", json={"vendor_id": vendor}).status_code == 201
        r = procurement_client.post(f"/rfps/{published_rfp}/responses", json={"vendor_id": vendor})
        assert r.status_code == 409

    def test_not_accepted_after_deadline(self, app, procurement_client, vendor, published_rfp):
        with app.app_context():
            db.session.get(Rfp, published_rfp).submission_deadline = datetime.utcnow() - timedelta(hours=1)
            db.session.commit()
        r = procurement_client.post(f"/rfps/{published_rfp}/responses", json={"vendor_id": vendor})
        assert r.status_code == 400

    def test_not_accepted_in_draft(self, procurement_client, vendor):
        rfp_id = procurement_client.post(
            "/rfps/", json={"title": "Draft", "submission_deadline": _deadline()}
        ).get_json()["rfp"]["id"]
        r = procurement_client.post(f"/rfps/{rfp_id}/responses", json={"vendor_id": vendor})
        assert r.status_code == 400

    def test_bid_amount_follows_items(self, procurement_client, vendor, published_rfp):
        response_id = procurement_client.post(
            f"/rfps/{published_rfp}/responses", json={"vendor_id": vendor}
        ).get_json()["response"]["id"]
        r = procurement_client.post(
            f"/rfps/{published_rfp}/responses/{response_id}/items",
            json={"description": "Desk", "quantity": 4, "unit_price": "120.25"},
        )
        assert r.status_code == 201
        assert r.get_json()["response"]["total_bid_amount"] == "481.00"

    def test_scores_limited_to_100(self, committee_client, two_responses, published_rfp):
        r = committee_client.put(
            f"/rfps/{published_rfp}/responses/{two_responses[0]}/scores", json={"technical_score": 101}
        )
        assert r.status_code == 400

    def test_award_status_not_settable_through_scores(self, committee_client, two_responses, published_rfp):
        r = committee_client.put(
            f"/rfps/{published_rfp}/responses/{two_responses[0]}/scores", json={"status": "awarded"}
        )
        assert r.status_code == 400


class TestEvaluation:

    def test_qcbs_ranking(self, procurement_client, two_responses, published_rfp):
        data = procurement_client.get(f"/rfps/{published_rfp}/evaluation").get_json()
        assert data["evaluation_type"] == "qcbs"
        assert (data["technical_weight"], data["commercial_weight"]) == (70, 30)

        rows = data["responses"]
        assert [row["vendor_name"] for row in rows] == ["Alpha Chairs", "Beta Desks"]
        assert [row["final_score"] for row in rows] == [86.5, 83.1]
        assert [row["recommendation"] for row in rows] == ["Recommended", "Second Choice"]

    def test_award_marks_winner_and_rejects_others(self, procurement_client, committee_client, two_responses, published_rfp):
        winner = two_responses[1]
        assert committee_client.post(f"/rfps/{published_rfp}/award", json={"response_id": winner}).status_code == 400

        procurement_client.post(f"/rfps/{published_rfp}/close")
        r = committee_client.post(f"/rfps/{published_rfp}/award", json={"response_id": winner})
        assert r.status_code == 200
        rfp = r.get_json()["rfp"]
        assert rfp["status"] == "awarded"
        statuses = {resp["id"]: resp["status"] for resp in rfp["responses"]}
        assert statuses == {winner: "awarded", two_responses[0]: "rejected"}

    def test_award_rejects_foreign_response(self, procurement_client, committee_client, two_responses, published_rfp):
        procurement_client.post(f"/rfps/{published_rfp}/close")
        r = committee_client.post(f"/rfps/{published_rfp}/award", json={"response_id": 9999})
        assert r.status_code == 400


class TestTechnicalScoring:

    @pytest.fixture
    def scored_rfp(self, procurement_client):
        r = procurement_client.post(
            "/rfps/",
            json={
                "title": "Consulting",
                "submission_deadline": _deadline(),
                "evaluation_type": "technical_l1",
                "enable_technical_scoring": True,
                "minimum_technical_score": 60,
            },
        )
        rfp_id = r.get_json()["rfp"]["id"]
        for name, points in (("Experience", 50), ("Methodology", 50)):
            r = procurement_client.post(
                f"/rfps/{rfp_id}/criteria", json={"criterion_name": name, "max_points": points}
            )
            assert r.status_code == 201, r.get_json()
        procurement_client.post(f"/rfps/{rfp_id}/publish")
        criteria = procurement_client.get(f"/rfps/{rfp_id}/criteria").get_json()["criteria"]
        return rfp_id, [c["id"] for c in criteria]

    def test_criteria_need_scoring_enabled(self, procurement_client, published_rfp):
        r = procurement_client.post(
            f"/rfps/{published_rfp}/criteria", json={"criterion_name": "X", "max_points": 10}
        )
        assert r.status_code == 400

    def test_total_and_qualification(self, procurement_client, committee_client, vendor, scored_rfp):
        rfp_id, (experience, methodology) = scored_rfp
        response_id = procurement_client.post(
            f"/rfps/{rfp_id}/responses", json={"vendor_id": vendor}
        ).get_json()["response"]["id"]
        url = f"/rfps/{rfp_id}/responses/{response_id}/criterion-scores"

        r = committee_client.put(url, json={"criterion_id": experience, "auto_calculated_score": 40})
        data = r.get_json()["response"]
        assert data["total_technical_score"] == 40
        assert data["is_technically_qualified"] is False

        r = committee_client.put(url, json={"criterion_id": methodology, "auto_calculated_score": 15})
        assert r.get_json()["response"]["total_technical_score"] == 55

        # unapproved manual override does not count
        r = committee_client.put(
            url,
            json={"criterion_id": methodology, "auto_calculated_score": 15, "manual_score": 30,
                  "manual_override_reason": "Strong references"},
        )
        assert r.get_json()["response"]["total_technical_score"] == 55

        r = committee_client.put(
            url,
            json={"criterion_id": methodology, "auto_calculated_score": 15, "manual_score": 30,
                  "manual_override_reason": "Strong references", "is_approved": True},
        )
        data = r.get_json()["response"]
        assert data["total_technical_score"] == 70
        assert data["is_technically_qualified"] is True

    def test_score_cannot_exceed_max_points(self, procurement_client, committee_client, vendor, scored_rfp):
        rfp_id, (experience, _) = scored_rfp
        response_id = procurement_client.post(
            f"/rfps/{rfp_id}/responses", json={"vendor_id": vendor}
        ).get_json()["response"]["id"]
        r = committee_client.put(
            f"/rfps/{rfp_id}/responses/{response_id}/criterion-scores",
            json={"criterion_id": experience, "auto_calculated_score": 51},
        )
        assert r.status_code == 400

    def test_max_points_cannot_drop_below_stored_scores(self, procurement_client, committee_client, vendor, scored_rfp):
        rfp_id, (experience, _) = scored_rfp
        response_id = procurement_client.post(
            f"/rfps/{rfp_id}/responses", json={"vendor_id": vendor}
        ).get_json()["response"]["id"]
        committee_client.put(
            f"/rfps/{rfp_id}/responses/{response_id}/criterion-scores",
            json={"criterion_id": experience, "auto_calculated_score": 20, "manual_score": 45,
                  "manual_override_reason": "Site visit"},
        )
        url = f"/rfps/{rfp_id}/criteria/{experience}"

        r = procurement_client.put(url, json={"criterion_name": "Experience", "max_points": 40})
        assert r.status_code == 400
        assert "max_points" in r.get_json()["fields"]

        r = procurement_client.put(url, json={"criterion_name": "Experience", "max_points": 45})
        assert r.status_code == 200
        assert r.get_json()["criterion"]["max_points"] == 45

    def test_manual_score_requires_reason(self, procurement_client, committee_client, vendor, scored_rfp):
        rfp_id, (experience, _) = scored_rfp
        response_id = procurement_client.post(
            f"/rfps/{rfp_id}/responses", json={"vendor_id": vendor}
        ).get_json()["response"]["id"]
        r = committee_client.put(
            f"/rfps/{rfp_id}/responses/{response_id}/criterion-scores",
            json={"criterion_id": experience, "manual_score": 10},
        )
        assert r.status_code == 400
        assert "manual_score" in r.get_json()["fields"]

    def test_evaluation_can_filter_qualified(self, procurement_client, committee_client, make_vendor, scored_rfp):
        rfp_id, (experience, methodology) = scored_rfp
        for name, points in (("Strong Co", 45), ("Weak Co", 10)):
            vendor_id = make_vendor(name, None)
            response_id = procurement_client.post(
                f"/rfps/{rfp_id}/responses", json={"vendor_id": vendor_id}
            ).get_json()["response"]["id"]
            url = f"/rfps/{rfp_id}/responses/{response_id}/criterion-scores"
            committee_client.put(url, json={"criterion_id": experience, "auto_calculated_score": points})
            committee_client.put(url, json={"criterion_id": methodology, "auto_calculated_score": points})

        everyone = procurement_client.get(f"/rfps/{rfp_id}/evaluation").get_json()["responses"]
        assert len(everyone) == 2
        qualified = procurement_client.get(f"/rfps/{rfp_id}/evaluation?qualified_only=1").get_json()["responses"]
        assert [row["vendor_name"] for row in qualified] == ["Strong Co"]
