"""
Tests for engine/assistant.py
The assistant projection flattens sources into snake_case request fields.
"""

import pytest

from engine.assistant import build_assistant_data
from engine.models import CategoryId
from engine.policy_templates import create_policy_source


@pytest.fixture
def renters_policy(catalog):
    return create_policy_source(
        "renters",
        {
            "carrier": "Lemonade",
            "coverages": {"personal_property_coverage": 30000, "liability_coverage": 100000, "deductible": 250},
        },
        policy_id="policy-renters",
        templates=catalog.policy_templates,
    )


class TestCardProjection:
    """Tests for credit card flattening"""

    def test_rental_fields_flattened_onto_card(self, catalog):
        # Act:
        data = build_assistant_data([catalog.get_card("card-a")], [], [], [], [], 95)

        # Assert:
        card = data.credit_cards[0]
        assert card.card_name == "Test Bank Card A"
        assert card.issuer == "Test Bank"
        assert card.coverage_type == "primary"
        assert card.max_coverage_amount == 50000
        assert card.max_rental_days == 31
        assert card.vehicle_exclusions == ["Exotic cars"]
        assert card.categories == ["travel-rental", "travel-trip", "travel-perks"]

    def test_benefit_blocks(self, catalog):
        data = build_assistant_data([catalog.get_card("card-a")], [], [], [], [], 95)

        card = data.credit_cards[0]

        assert card.trip_protection.cancellation_coverage == 5000
        assert card.travel_perks.lounge_access == ["Priority Pass", "Centurion"]
        assert card.travel_perks.travel_credits[0].amount == 300
        assert card.purchase_protection is None

    def test_absent_fields_left_out_of_payload(self, catalog):
        """Test a card without rental coverage sends no rental keys"""
        # Act:
        payload = build_assistant_data([catalog.get_card("card-c")], [], [], [], [], 0).to_payload()

        # Assert:
        card = payload["credit_cards"][0]
        assert "coverage_type" not in card
        assert "trip_protection" not in card
        assert card["purchase_protection"]["max_per_claim"] == 500
        assert card["purchase_protection"]["what_is_covered"] == ["Theft", "Accidental damage"]


class TestPlanAndPolicyProjection:
    """Tests for plan and policy flattening"""

    def test_plan_cost_described(self, catalog):
        # Act:
        data = build_assistant_data(
            [],
            [catalog.get_plan("plan-monthly"), catalog.get_plan("plan-onetime")],
            [], [], [], 120,
        )

        # Assert:
        monthly, one_time = data.protection_plans
        assert monthly.cost == "monthly: $10"
        assert monthly.plan_type == "device"
        assert monthly.coverage_details == ["Accidental damage", "Theft", "Loss"]
        assert one_time.cost == "Priced per product"

    def test_policy_fields(self, renters_policy):
        # Act:
        data = build_assistant_data([], [], [renters_policy], [], [], 0)

        # Assert:
        policy = data.policies[0]
        assert policy.policy_name == "Lemonade Renters Insurance"
        assert policy.policy_type == "renters"
        assert policy.carrier == "Lemonade"
        assert policy.deductible == 250
        assert policy.limits["personal_property_coverage"] == 30000
        assert "travel-baggage" in policy.categories

    def test_policies_sent_as_insurance_policies(self, renters_policy):
        """Test policies use the assistant's request field name"""
        payload = build_assistant_data([], [], [renters_policy], [], [], 0).to_payload()

        assert "insurance_policies" in payload
        assert "policies" not in payload
        assert payload["insurance_policies"][0]["carrier"] == "Lemonade"


class TestSummary:
    """Tests for the summary block"""

    def test_summary_values(self, catalog, renters_policy):
        # Act:
        data = build_assistant_data(
            [catalog.get_card("card-c")],
            [catalog.get_plan("plan-yearly")],
            [renters_policy],
            [CategoryId.PURCHASE_PROTECTION],
            [CategoryId.TRAVEL_RENTAL],
            99.0,
        )

        # Assert:
        assert data.summary.total_sources == 3
        assert data.summary.categories_covered == ["purchase-protection"]
        assert data.summary.categories_not_covered == ["travel-rental"]
        assert data.to_payload()["summary"]["total_annual_cost"] == 99.0
