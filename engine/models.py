"""
Data models for the Coverage Aggregation Engine.
All models are frozen dataclasses: a hydrated source is never mutated in
place, it is rebuilt from its record instead.

A coverage source is a tagged variant. `CoverageSource.kind` names the
variant and exactly one of the `card` / `plan` / `policy` payloads is set.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Tuple, Union


class CategoryId(str, Enum):
    """Closed taxonomy of coverage categories, in sweep order."""
    TRAVEL_RENTAL = "travel-rental"
    TRAVEL_TRIP = "travel-trip"
    TRAVEL_BAGGAGE = "travel-baggage"
    TRAVEL_PERKS = "travel-perks"
    TRAVEL_EMERGENCY = "travel-emergency"
    PURCHASE_PROTECTION = "purchase-protection"
    PURCHASE_WARRANTY = "purchase-warranty"
    PURCHASE_RETURN = "purchase-return"
    PURCHASE_PRICE = "purchase-price"
    PHONE_PROTECTION = "phone-protection"
    ROADSIDE_ASSISTANCE = "roadside-assistance"
    FOUNDATIONAL_AUTO = "foundational-auto"
    FOUNDATIONAL_HOME = "foundational-home"


ALL_CATEGORIES: Tuple[CategoryId, ...] = tuple(CategoryId)


class SourceKind(str, Enum):
    CREDIT_CARD = "credit-card"
    PROTECTION_PLAN = "protection-plan"
    POLICY = "policy"


class CoverageLevel(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    LIMITED = "limited"
    NONE = "none"


class CoverageStatus(str, Enum):
    """Source-count label shown for a category."""
    COVERED = "covered"
    PARTIAL = "partial"
    NONE = "none"


class RentalCoverageType(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class PlanType(str, Enum):
    DEVICE = "device"
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    SERVICE = "service"


class PlanCostCadence(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one-time"
    VARIABLE = "variable"


class PolicyType(str, Enum):
    AUTO = "auto"
    HOME = "home"
    RENTERS = "renters"
    UMBRELLA = "umbrella"


class PolicyOrigin(str, Enum):
    DOCUMENT = "document"
    MANUAL = "manual"


LimitValue = Union[int, float, str]


def frozen_mapping(values: Optional[Mapping] = None) -> Mapping:
    """Return a read-only copy of a mapping (None becomes an empty mapping)."""
    return MappingProxyType(dict(values or {}))


def frozen_strings(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    """Normalize an optional list of strings into a tuple."""
    if not values:
        return ()
    if isinstance(values, str):
        return (values,)
    return tuple(str(v) for v in values)


# =============================================================================
# Benefit details (category-indexed, shared by every source kind)
# =============================================================================

@dataclass(frozen=True)
class BenefitDetails:
    """
    What one source offers for one category.

    Fields:
    - category_id: the category this benefit contributes to
    - coverage_level: full | partial | limited | none
    - limits: read-only bag of numeric/string limits (max_per_claim, deductible, ...)
    - covered / not_covered: item lists
    - conditions, claim_process, notes: optional extra terms
    """
    category_id: CategoryId
    coverage_level: CoverageLevel
    limits: Mapping[str, LimitValue] = field(default_factory=frozen_mapping)
    covered: Tuple[str, ...] = ()
    not_covered: Tuple[str, ...] = ()
    conditions: Tuple[str, ...] = ()
    claim_process: Optional[str] = None
    notes: Tuple[str, ...] = ()

    def numeric_limit(self, name: str) -> Optional[float]:
        """Return a limit as a number, or None when absent or non-numeric."""
        value = self.limits.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value


@dataclass(frozen=True)
class SourceMetadata:
    last_updated: str
    version: str
    source_url: Optional[str] = None
    notes: Optional[str] = None


# =============================================================================
# Typed credit card benefit blocks
# =============================================================================

@dataclass(frozen=True)
class RentalBenefit:
    coverage_type: RentalCoverageType
    max_coverage: float
    max_days: int
    what_is_covered: Tuple[str, ...] = ()
    what_is_not_covered: Tuple[str, ...] = ()
    vehicle_exclusions: Tuple[str, ...] = ()
    country_exclusions: Tuple[str, ...] = ()
    country_notes: Optional[str] = None
    activation_steps: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TripBenefit:
    cancellation_coverage: float
    interruption_coverage: float
    delay_coverage: float
    delay_threshold_hours: float
    covered_reasons: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BaggageBenefit:
    delay_coverage: float
    delay_threshold_hours: float
    lost_baggage_coverage: float
    coverage_details: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PurchaseBenefit:
    max_per_claim: float
    max_per_year: float
    coverage_period_days: int
    covered: Tuple[str, ...] = ()
    not_covered: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WarrantyBenefit:
    extension_years: float
    max_original_warranty_years: float
    max_per_claim: float
    coverage_details: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TravelCredit:
    amount: float
    description: str


@dataclass(frozen=True)
class TravelPerksBenefit:
    lounge_access: Tuple[str, ...] = ()
    travel_credits: Tuple[TravelCredit, ...] = ()
    other_perks: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PhoneBenefit:
    max_per_claim: float
    max_claims_per_year: int
    deductible: float
    coverage_details: Tuple[str, ...] = ()
    requirements: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RoadsideBenefit:
    provider: str
    towing_miles: float
    services: Tuple[str, ...] = ()
    coverage_details: Tuple[str, ...] = ()
    limitations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EmergencyBenefit:
    evacuation_coverage: float
    medical_coverage: Optional[float] = None
    services: Tuple[str, ...] = ()
    coverage_details: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReturnBenefit:
    max_per_item: float
    max_per_year: float
    return_window_days: int
    coverage_details: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()


# =============================================================================
# Per-kind payloads
# =============================================================================

@dataclass(frozen=True)
class CardPayload:
    """
    Credit card specific fields. Each benefit block is None when the card
    does not offer that benefit.
    """
    network: str
    annual_fee: float
    tier: str
    rental: Optional[RentalBenefit] = None
    trip_protection: Optional[TripBenefit] = None
    baggage_protection: Optional[BaggageBenefit] = None
    purchase_protection: Optional[PurchaseBenefit] = None
    extended_warranty: Optional[WarrantyBenefit] = None
    travel_perks: Optional[TravelPerksBenefit] = None
    cell_phone_protection: Optional[PhoneBenefit] = None
    roadside_assistance: Optional[RoadsideBenefit] = None
    emergency_assistance: Optional[EmergencyBenefit] = None
    return_protection: Optional[ReturnBenefit] = None


@dataclass(frozen=True)
class PlanCost:
    cadence: PlanCostCadence
    amount: Optional[float] = None
    note: Optional[str] = None

    def annualized(self) -> float:
        """Yearly cost; one-time and variable costs contribute nothing."""
        if not self.amount:
            return 0.0
        if self.cadence == PlanCostCadence.YEARLY:
            return float(self.amount)
        if self.cadence == PlanCostCadence.MONTHLY:
            return float(self.amount) * 12
        return 0.0

    def describe(self) -> str:
        if self.note:
            return self.note
        amount = f"${self.amount:g}" if self.amount else "varies"
        return f"{self.cadence.value}: {amount}"


@dataclass(frozen=True)
class PlanPayload:
    plan_type: PlanType
    cost: PlanCost
    eligible_products: Tuple[str, ...] = ()
    purchase_requirements: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyPayload:
    """
    Uploaded policy fields. `coverages` keeps the extracted coverage values
    (limits, deductibles, flags) keyed by field name.
    """
    policy_type: PolicyType
    uploaded_at: str
    origin: PolicyOrigin
    policy_number: Optional[str] = None
    carrier: Optional[str] = None
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None
    document_id: Optional[str] = None
    named_insured: Optional[str] = None
    coverages: Mapping[str, Any] = field(default_factory=frozen_mapping)


# =============================================================================
# Coverage source (tagged variant)
# =============================================================================

_PAYLOAD_FIELD = {
    SourceKind.CREDIT_CARD: "card",
    SourceKind.PROTECTION_PLAN: "plan",
    SourceKind.POLICY: "policy",
}


@dataclass(frozen=True)
class CoverageSource:
    """
    Any card, plan or policy that contributes benefits to one or more categories.

    Invariants checked on construction:
    - the payload matching `kind` is set and the other two are None
    - `categories` equals the set of keys in `benefits`
    """
    kind: SourceKind
    id: str
    name: str
    full_name: str
    provider: str
    categories: Tuple[CategoryId, ...]
    benefits: Mapping[CategoryId, BenefitDetails]
    metadata: SourceMetadata
    card: Optional[CardPayload] = None
    plan: Optional[PlanPayload] = None
    policy: Optional[PolicyPayload] = None

    def __post_init__(self):
        expected = _PAYLOAD_FIELD[self.kind]
        for kind, attr in _PAYLOAD_FIELD.items():
            present = getattr(self, attr) is not None
            if attr == expected and not present:
                raise ValueError(f"{self.kind.value} source '{self.id}' is missing its {attr} payload")
            if attr != expected and present:
                raise ValueError(f"{self.kind.value} source '{self.id}' carries a {kind.value} payload")

        if set(self.categories) != set(self.benefits.keys()):
            raise ValueError(
                f"Source '{self.id}' categories {sorted(c.value for c in self.categories)} "
                f"do not match its benefits {sorted(c.value for c in self.benefits)}"
            )

    def covers(self, category_id: CategoryId) -> bool:
        return category_id in self.categories

    def benefit(self, category_id: CategoryId) -> Optional[BenefitDetails]:
        return self.benefits.get(category_id)

    @property
    def display_name(self) -> str:
        return self.full_name or self.name


@dataclass(frozen=True)
class CoverageSelection:
    """
    A user's selection: the single mutable-by-replacement value owned by the store.

    Fields:
    - user_id: identity the selection belongs to
    - selected_card_ids: chosen card ids, in selection order
    - uploaded_policies: validated policy sources
    - added_plan_ids: chosen plan ids, in selection order
    - last_updated: ISO timestamp of the last mutation (None when never mutated)
    """
    user_id: str
    selected_card_ids: Tuple[str, ...] = ()
    uploaded_policies: Tuple[CoverageSource, ...] = ()
    added_plan_ids: Tuple[str, ...] = ()
    last_updated: Optional[str] = None

    @classmethod
    def empty(cls, user_id: str) -> "CoverageSelection":
        return cls(user_id=user_id)


@dataclass(frozen=True)
class SelectionCounts:
    cards: int
    plans: int
    policies: int

    @property
    def total(self) -> int:
        return self.cards + self.plans + self.policies
