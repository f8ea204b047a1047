"""
Shared fixtures: a small hand-written catalog whose numbers make the
query rules easy to read in tests, plus the bundled data catalog.
"""

import copy

import pytest

from engine.catalog import CoverageCatalog
from engine.config import StoreConfig
from engine.storage import InMemoryStorage
from engine.store import CoverageStore
from engine.templates import BenefitTemplateLibrary, load_json

METADATA = {"last_updated": "2025-01-15", "version": "1.0.0"}

TEMPLATE_DOCUMENT = {
    "template_type": "test",
    "metadata": METADATA,
    "templates": {
        "rental_exclusions": {
            "basic": {
                "name": "Basic rental terms",
                "issuer": "Test Bank",
                "what_is_covered": ["Collision damage", "Theft"],
                "what_is_not_covered": ["Liability"],
                "vehicle_exclusions": ["Exotic cars"],
                "country_exclusions": ["Ireland"],
            },
        },
        "trip_protection": {
            "standard": {
                "name": "Standard trip protection",
                "issuer": "Test Bank",
                "cancellation_coverage": 5000,
                "interruption_coverage": 5000,
                "delay_coverage": 300,
                "delay_threshold_hours": 12,
                "covered_reasons": ["Illness", "Severe weather"],
            },
        },
        "purchase_protection": {
            "standard": {
                "name": "Standard purchase protection",
                "issuer": "Test Bank",
                "max_per_claim": 500,
                "max_per_year": 50000,
                "coverage_period_days": 120,
                "covered": ["Theft", "Accidental damage"],
            },
        },
        "travel_perks": {
            "lounges": {
                "name": "Lounge package",
                "issuer": "Other Bank",
                "lounge_access": ["Priority Pass", "Centurion"],
                "travel_credits": [{"amount": 300, "description": "annual travel credit"}],
            },
        },
    },
}

CARD_DOCUMENT = {
    "issuer": "Test Bank",
    "metadata": METADATA,
    "cards": [
        {
            "id": "card-a",
            "name": "Card A",
            "full_name": "Test Bank Card A",
            "network": "Visa",
            "annual_fee": 95,
            "tier": "premium",
            "categories": ["travel-rental", "travel-trip", "travel-perks"],
            "benefits": {
                "rental": {
                    "coverage_type": "primary",
                    "max_coverage": 50000,
                    "max_days": 31,
                    "exclusions_template": "basic",
                },
                "trip_protection": "standard",
                "travel_perks": "lounges",
            },
        },
        {
            "id": "card-b",
            "name": "Card B",
            "network": "Mastercard",
            "annual_fee": 250,
            "tier": "premium",
            "categories": ["travel-rental"],
            "benefits": {
                "rental": {"coverage_type": "secondary", "max_coverage": 75000, "max_days": 30},
            },
        },
        {
            "id": "card-c",
            "name": "Card C",
            "network": "Visa",
            "annual_fee": 0,
            "tier": "standard",
            "categories": ["purchase-protection"],
            "benefits": {"purchase_protection": "standard"},
        },
        {
            "id": "card-d",
            "name": "Card D",
            "network": "Visa",
            "annual_fee": 0,
            "tier": "standard",
            "categories": ["travel-rental"],
            "benefits": {
                "rental": {"coverage_type": "primary", "max_coverage": 50000, "max_days": 15},
            },
        },
    ],
}

PLAN_DOCUMENT = {
    "provider": "Test Provider",
    "metadata": METADATA,
    "plans": [
        {
            "id": "plan-monthly",
            "name": "Monthly Care",
            "plan_type": "device",
            "cost": {"cadence": "monthly", "amount": 10},
            "categories": ["purchase-protection"],
            "benefits": {
                "purchase-protection": {
                    "coverage_level": "full",
                    "limits": {"max_per_claim": 1500},
                    "covered": ["Accidental damage", "Theft", "Loss"],
                },
            },
        },
        {
            "id": "plan-yearly",
            "name": "Yearly Phone",
            "plan_type": "device",
            "cost": {"cadence": "yearly", "amount": 99},
            "categories": ["phone-protection"],
            "benefits": {
                "phone-protection": {"limits": {"max_per_claim": 1000, "deductible": 29}},
            },
        },
        {
            "id": "plan-onetime",
            "name": "One-time Warranty",
            "plan_type": "purchase",
            "cost": {"cadence": "one-time", "amount": 200, "note": "Priced per product"},
            "categories": ["purchase-warranty"],
            "benefits": {"purchase-warranty": {"coverage_level": "partial"}},
        },
    ],
}


def bundled_policy_template_records():
    templates_dir = StoreConfig.DATA_DIR / "policy_templates"
    return [load_json(path) for path in sorted(templates_dir.glob("*.json"))]


@pytest.fixture
def template_document():
    return copy.deepcopy(TEMPLATE_DOCUMENT)


@pytest.fixture
def card_document():
    return copy.deepcopy(CARD_DOCUMENT)


@pytest.fixture
def plan_document():
    return copy.deepcopy(PLAN_DOCUMENT)


@pytest.fixture
def policy_template_records():
    return bundled_policy_template_records()


@pytest.fixture
def library():
    return BenefitTemplateLibrary.from_documents([TEMPLATE_DOCUMENT])


@pytest.fixture
def catalog(library):
    return CoverageCatalog.from_records(
        card_documents=[CARD_DOCUMENT],
        plan_documents=[PLAN_DOCUMENT],
        policy_template_records=bundled_policy_template_records(),
        library=library,
    )


@pytest.fixture(scope="session")
def bundled_catalog():
    return CoverageCatalog.load()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def store(storage, catalog):
    store = CoverageStore(storage, catalog)
    yield store
    store.close()
