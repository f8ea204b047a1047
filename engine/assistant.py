"""
Assistant projection.
Flattens selected sources into the snake_case shape the coverage assistant
consumes as grounding context. Pure field renaming and flattening.
"""

from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from engine.models import CategoryId, CoverageSource


class _AssistantModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class TravelCreditForAssistant(_AssistantModel):
    amount: float
    description: str


class TripProtectionForAssistant(_AssistantModel):
    cancellation_coverage: float
    interruption_coverage: float
    delay_coverage: float
    delay_threshold_hours: float
    covered_reasons: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)


class BaggageProtectionForAssistant(_AssistantModel):
    delay_coverage: float
    delay_threshold_hours: float
    lost_baggage_coverage: float
    coverage_details: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)


class PurchaseProtectionForAssistant(_AssistantModel):
    max_per_claim: float
    max_per_year: float
    coverage_period_days: int
    what_is_covered: List[str] = Field(default_factory=list)
    what_is_not_covered: List[str] = Field(default_factory=list)


class ExtendedWarrantyForAssistant(_AssistantModel):
    extension_years: float
    max_original_warranty_years: float
    max_per_claim: float
    coverage_details: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)


class TravelPerksForAssistant(_AssistantModel):
    lounge_access: List[str] = Field(default_factory=list)
    travel_credits: List[TravelCreditForAssistant] = Field(default_factory=list)
    other_perks: List[str] = Field(default_factory=list)


class CellPhoneProtectionForAssistant(_AssistantModel):
    max_per_claim: float
    max_claims_per_year: int
    deductible: float
    coverage_details: List[str] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)


class RoadsideAssistanceForAssistant(_AssistantModel):
    provider: str
    towing_miles: float
    services: List[str] = Field(default_factory=list)
    coverage_details: List[str] = Field(default_factory=list)
    limitations: List[str] = Field(default_factory=list)


class EmergencyAssistanceForAssistant(_AssistantModel):
    evacuation_coverage: float
    medical_coverage: Optional[float] = None
    services: List[str] = Field(default_factory=list)
    coverage_details: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)


class ReturnProtectionForAssistant(_AssistantModel):
    max_per_item: float
    max_per_year: float
    return_window_days: int
    coverage_details: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)


class CreditCardForAssistant(_AssistantModel):
    card_name: str
    issuer: str
    annual_fee: float
    categories: List[str] = Field(default_factory=list)

    # Rental coverage, flattened onto the card
    coverage_type: Optional[str] = None
    max_coverage_amount: Optional[float] = None
    max_rental_days: Optional[int] = None
    what_is_covered: Optional[List[str]] = None
    what_is_not_covered: Optional[List[str]] = None
    vehicle_exclusions: Optional[List[str]] = None
    country_exclusions: Optional[List[str]] = None
    country_notes: Optional[str] = None

    trip_protection: Optional[TripProtectionForAssistant] = None
    baggage_protection: Optional[BaggageProtectionForAssistant] = None
    purchase_protection: Optional[PurchaseProtectionForAssistant] = None
    extended_warranty: Optional[ExtendedWarrantyForAssistant] = None
    travel_perks: Optional[TravelPerksForAssistant] = None
    cell_phone_protection: Optional[CellPhoneProtectionForAssistant] = None
    roadside_assistance: Optional[RoadsideAssistanceForAssistant] = None
    emergency_assistance: Optional[EmergencyAssistanceForAssistant] = None
    return_protection: Optional[ReturnProtectionForAssistant] = None


class ProtectionPlanForAssistant(_AssistantModel):
    plan_name: str
    provider: str
    plan_type: str
    categories: List[str] = Field(default_factory=list)
    coverage_details: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)
    cost: str


class PolicyForAssistant(_AssistantModel):
    policy_name: str
    policy_type: str
    carrier: str
    categories: List[str] = Field(default_factory=list)
    coverage_details: Optional[str] = None
    deductible: Optional[float] = None
    limits: Dict[str, float] = Field(default_factory=dict)


class CoverageSummaryForAssistant(_AssistantModel):
    total_sources: int
    categories_covered: List[str] = Field(default_factory=list)
    categories_not_covered: List[str] = Field(default_factory=list)
    total_annual_cost: float


class CoverageDataForAssistant(_AssistantModel):
    credit_cards: List[CreditCardForAssistant] = Field(default_factory=list)
    protection_plans: List[ProtectionPlanForAssistant] = Field(default_factory=list)
    policies: List[PolicyForAssistant] = Field(default_factory=list, serialization_alias="insurance_policies")
    summary: CoverageSummaryForAssistant

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict in the assistant's request field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Projection
# =============================================================================

def _card_for_assistant(card: CoverageSource) -> CreditCardForAssistant:
    payload = card.card
    fields: Dict[str, Any] = {
        "card_name": card.display_name,
        "issuer": card.provider,
        "annual_fee": payload.annual_fee,
        "categories": [c.value for c in card.categories],
    }

    if payload.rental:
        rental = payload.rental
        fields.update(
            coverage_type=rental.coverage_type.value,
            max_coverage_amount=rental.max_coverage,
            max_rental_days=rental.max_days,
            what_is_covered=list(rental.what_is_covered),
            what_is_not_covered=list(rental.what_is_not_covered),
            vehicle_exclusions=list(rental.vehicle_exclusions),
            country_exclusions=list(rental.country_exclusions),
            country_notes=rental.country_notes,
        )

    if payload.trip_protection:
        trip = payload.trip_protection
        fields["trip_protection"] = TripProtectionForAssistant(
            cancellation_coverage=trip.cancellation_coverage,
            interruption_coverage=trip.interruption_coverage,
            delay_coverage=trip.delay_coverage,
            delay_threshold_hours=trip.delay_threshold_hours,
            covered_reasons=list(trip.covered_reasons),
            exclusions=list(trip.exclusions),
        )

    if payload.baggage_protection:
        baggage = payload.baggage_protection
        fields["baggage_protection"] = BaggageProtectionForAssistant(
            delay_coverage=baggage.delay_coverage,
            delay_threshold_hours=baggage.delay_threshold_hours,
            lost_baggage_coverage=baggage.lost_baggage_coverage,
            coverage_details=list(baggage.coverage_details),
            exclusions=list(baggage.exclusions),
        )

    if payload.purchase_protection:
        purchase = payload.purchase_protection
        fields["purchase_protection"] = PurchaseProtectionForAssistant(
            max_per_claim=purchase.max_per_claim,
            max_per_year=purchase.max_per_year,
            coverage_period_days=purchase.coverage_period_days,
            what_is_covered=list(purchase.covered),
            what_is_not_covered=list(purchase.not_covered),
        )

    if payload.extended_warranty:
        warranty = payload.extended_warranty
        fields["extended_warranty"] = ExtendedWarrantyForAssistant(
            extension_years=warranty.extension_years,
            max_original_warranty_years=warranty.max_original_warranty_years,
            max_per_claim=warranty.max_per_claim,
            coverage_details=list(warranty.coverage_details),
            exclusions=list(warranty.exclusions),
        )

    if payload.travel_perks:
        perks = payload.travel_perks
        fields["travel_perks"] = TravelPerksForAssistant(
            lounge_access=list(perks.lounge_access),
            travel_credits=[
                TravelCreditForAssistant(amount=c.amount, description=c.description)
                for c in perks.travel_credits
            ],
            other_perks=list(perks.other_perks),
        )

    if payload.cell_phone_protection:
        phone = payload.cell_phone_protection
        fields["cell_phone_protection"] = CellPhoneProtectionForAssistant(
            max_per_claim=phone.max_per_claim,
            max_claims_per_year=phone.max_claims_per_year,
            deductible=phone.deductible,
            coverage_details=list(phone.coverage_details),
            requirements=list(phone.requirements),
            exclusions=list(phone.exclusions),
        )

    if payload.roadside_assistance:
        roadside = payload.roadside_assistance
        fields["roadside_assistance"] = RoadsideAssistanceForAssistant(
            provider=roadside.provider,
            towing_miles=roadside.towing_miles,
            services=list(roadside.services),
            coverage_details=list(roadside.coverage_details),
            limitations=list(roadside.limitations),
        )

    if payload.emergency_assistance:
        emergency = payload.emergency_assistance
        fields["emergency_assistance"] = EmergencyAssistanceForAssistant(
            evacuation_coverage=emergency.evacuation_coverage,
            medical_coverage=emergency.medical_coverage,
            services=list(emergency.services),
            coverage_details=list(emergency.coverage_details),
            exclusions=list(emergency.exclusions),
        )

    if payload.return_protection:
        returns = payload.return_protection
        fields["return_protection"] = ReturnProtectionForAssistant(
            max_per_item=returns.max_per_item,
            max_per_year=returns.max_per_year,
            return_window_days=returns.return_window_days,
            coverage_details=list(returns.coverage_details),
            exclusions=list(returns.exclusions),
        )

    return CreditCardForAssistant(**fields)


def _plan_for_assistant(plan: CoverageSource) -> ProtectionPlanForAssistant:
    # Plans describe themselves through their first category's benefit
    primary = plan.benefit(plan.categories[0]) if plan.categories else None
    return ProtectionPlanForAssistant(
        plan_name=plan.display_name,
        provider=plan.provider,
        plan_type=plan.plan.plan_type.value,
        categories=[c.value for c in plan.categories],
        coverage_details=list(primary.covered) if primary else [],
        exclusions=list(primary.not_covered) if primary else [],
        cost=plan.plan.cost.describe(),
    )


def _policy_for_assistant(policy: CoverageSource) -> PolicyForAssistant:
    payload = policy.policy
    limits = {
        name: value
        for name, value in payload.coverages.items()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    }
    deductible = limits.get("deductible", limits.get("collision_deductible"))

    details: List[str] = []
    for category_id in policy.categories:
        for line in policy.benefits[category_id].covered:
            if line not in details:
                details.append(line)

    return PolicyForAssistant(
        policy_name=policy.display_name,
        policy_type=payload.policy_type.value,
        carrier=payload.carrier or "Unknown Carrier",
        categories=[c.value for c in policy.categories],
        coverage_details="; ".join(details) or None,
        deductible=deductible,
        limits=limits,
    )


def build_assistant_data(
    cards: Sequence[CoverageSource],
    plans: Sequence[CoverageSource],
    policies: Sequence[CoverageSource],
    categories_covered: Sequence[CategoryId],
    categories_not_covered: Sequence[CategoryId],
    total_annual_cost: float,
) -> CoverageDataForAssistant:
    return CoverageDataForAssistant(
        credit_cards=[_card_for_assistant(c) for c in cards],
        protection_plans=[_plan_for_assistant(p) for p in plans],
        policies=[_policy_for_assistant(p) for p in policies],
        summary=CoverageSummaryForAssistant(
            total_sources=len(cards) + len(plans) + len(policies),
            categories_covered=[c.value for c in categories_covered],
            categories_not_covered=[c.value for c in categories_not_covered],
            total_annual_cost=total_annual_cost,
        ),
    )
