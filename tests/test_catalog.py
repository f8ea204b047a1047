"""
Tests for engine/catalog.py
"""

import pytest

from engine.catalog import CoverageCatalog
from engine.errors import HydrationError
from engine.models import CategoryId, PlanType, PolicyType


class TestCatalogLookups:
    """Tests for id lookups and filters over the catalog"""

    def test_data_file_order_kept(self, catalog):
        assert [c.id for c in catalog.cards] == ["card-a", "card-b", "card-c", "card-d"]
        assert [p.id for p in catalog.plans] == ["plan-monthly", "plan-yearly", "plan-onetime"]

    def test_get_card_and_plan(self, catalog):
        assert catalog.get_card("card-b").name == "Card B"
        assert catalog.get_plan("plan-yearly").name == "Yearly Phone"
        assert catalog.get_card("plan-yearly") is None
        assert catalog.get_plan("missing") is None

    def test_get_source_searches_cards_and_plans(self, catalog):
        assert catalog.get_source("card-c").id == "card-c"
        assert catalog.get_source("plan-onetime").id == "plan-onetime"
        assert catalog.get_source("nothing") is None

    def test_cards_by_issuer_case_insensitive(self, catalog):
        assert len(catalog.cards_by_issuer("TEST BANK")) == 4
        assert catalog.cards_by_issuer("Other Bank") == []

    def test_cards_by_tier_and_network(self, catalog):
        assert [c.id for c in catalog.cards_by_tier("premium")] == ["card-a", "card-b"]
        assert [c.id for c in catalog.cards_by_network("mastercard")] == ["card-b"]

    def test_cards_for_category(self, catalog):
        """Test category filtering returns only cards backing that category"""
        # Act:
        rental = catalog.cards_for_category(CategoryId.TRAVEL_RENTAL)

        # Assert:
        assert [c.id for c in rental] == ["card-a", "card-b", "card-d"]
        assert catalog.cards_for_category(CategoryId.FOUNDATIONAL_HOME) == []

    def test_cards_with_primary_rental(self, catalog):
        assert [c.id for c in catalog.cards_with_primary_rental()] == ["card-a", "card-d"]

    def test_plan_filters(self, catalog):
        assert len(catalog.plans_by_provider("test provider")) == 3
        assert [p.id for p in catalog.plans_by_type(PlanType.PURCHASE)] == ["plan-onetime"]
        assert [p.id for p in catalog.plans_for_category(CategoryId.PHONE_PROTECTION)] == ["plan-yearly"]

    def test_issuers(self, catalog):
        assert catalog.issuers() == ["Test Bank"]

    def test_policy_templates(self, catalog):
        template = catalog.get_policy_template(PolicyType.RENTERS)

        assert template.display_name == "Renters Insurance"
        assert catalog.get_policy_template("umbrella").policy_type == PolicyType.UMBRELLA


class TestCatalogConstruction:
    """Tests for building catalogs"""

    def test_duplicate_card_ids_rejected(self, card_document, library):
        # Arrange:
        card_document["cards"].append(dict(card_document["cards"][0]))

        # Act & Assert:
        with pytest.raises(HydrationError, match="card-a"):
            CoverageCatalog.from_records(card_documents=[card_document], library=library)

    def test_duplicate_plan_ids_rejected(self, plan_document):
        with pytest.raises(HydrationError, match="plan-yearly"):
            CoverageCatalog.from_records(plan_documents=[plan_document, {"plans": [plan_document["plans"][1]]}])

    def test_empty_catalog(self):
        catalog = CoverageCatalog([], [])

        assert catalog.cards == []
        assert catalog.plans == []
        assert catalog.get_policy_template(PolicyType.AUTO) is None

    def test_bundled_catalog(self, bundled_catalog):
        """Test the shipped data hydrates into a usable catalog"""
        # Assert:
        assert len(bundled_catalog.cards) == 9
        assert len(bundled_catalog.plans) == 7
        assert set(bundled_catalog.policy_templates) == set(PolicyType)
        assert set(bundled_catalog.issuers()) == {"Chase", "American Express"}
        assert bundled_catalog.get_plan("applecare-plus-iphone").plan.cost.annualized() == pytest.approx(161.88)
