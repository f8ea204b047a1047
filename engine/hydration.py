"""
Source hydration.
Turns compact card and plan records from data/sources/ into self-contained
CoverageSource values. Hydration runs once over every record at load time.

Card records reference benefit templates by key; rental data is always
inline and only its exclusion text comes from a template. Plan records carry
their benefits inline, keyed by category.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from engine.config import StoreConfig
from engine.errors import HydrationError
from engine.models import (
    ALL_CATEGORIES,
    BaggageBenefit,
    BenefitDetails,
    CardPayload,
    CategoryId,
    CoverageLevel,
    CoverageSource,
    EmergencyBenefit,
    PhoneBenefit,
    PlanCost,
    PlanCostCadence,
    PlanPayload,
    PlanType,
    PurchaseBenefit,
    RentalBenefit,
    RentalCoverageType,
    ReturnBenefit,
    RoadsideBenefit,
    SourceKind,
    SourceMetadata,
    TravelCredit,
    TravelPerksBenefit,
    TripBenefit,
    WarrantyBenefit,
    frozen_mapping,
    frozen_strings,
)
from engine.templates import (
    BenefitTemplateLibrary,
    TemplateKind,
    freeze_value,
    get_template_library,
    load_json,
    parse_metadata,
)

logger = logging.getLogger(__name__)

UNVERSIONED = SourceMetadata(last_updated="unknown", version="0.0.0")


# =============================================================================
# Field helpers
# =============================================================================

def _number(data: Mapping[str, Any], name: str, context: str) -> float:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise HydrationError(f"{context}: '{name}' must be a number, got {value!r}")
    return value


def _optional_number(data: Mapping[str, Any], name: str) -> Optional[float]:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _category(value: Any, context: str) -> CategoryId:
    try:
        return CategoryId(value)
    except ValueError:
        raise HydrationError(f"{context}: unknown category '{value}'")


def _level(data: Mapping[str, Any], default: CoverageLevel, context: str) -> CoverageLevel:
    raw = data.get("coverage_level")
    if raw is None:
        return default
    try:
        return CoverageLevel(raw)
    except ValueError:
        raise HydrationError(f"{context}: invalid coverage_level '{raw}'")


def _limits(**values: Any) -> Mapping[str, Any]:
    """Build a limits bag, leaving out absent values."""
    return frozen_mapping({k: v for k, v in values.items() if v is not None})


def parse_benefit_details(category_id: CategoryId, raw: Mapping[str, Any], context: str) -> BenefitDetails:
    """Parse an inline benefit (plan records, policy template defaults)."""
    return BenefitDetails(
        category_id=category_id,
        coverage_level=_level(raw, CoverageLevel.FULL, context),
        limits=freeze_value(dict(raw.get("limits") or {})),
        covered=frozen_strings(raw.get("covered")),
        not_covered=frozen_strings(raw.get("not_covered")),
        conditions=frozen_strings(raw.get("conditions")),
        claim_process=raw.get("claim_process"),
        notes=frozen_strings(raw.get("notes")),
    )


def _resolve_categories(
    source_id: str,
    declared: List[Any],
    benefits: Mapping[CategoryId, BenefitDetails],
) -> Tuple[CategoryId, ...]:
    """
    Categories in sweep order, restricted to those a benefit backs.
    Declared categories with no benefit are dropped with a warning.
    """
    for raw in declared:
        category_id = _category(raw, f"Source '{source_id}'")
        if category_id not in benefits:
            logger.warning(
                "Source '%s' declares category '%s' without a benefit; dropping it",
                source_id, category_id.value,
            )
    return tuple(c for c in ALL_CATEGORIES if c in benefits)


# =============================================================================
# Card benefit blocks
# =============================================================================

def _build_rental(data: Mapping[str, Any], context: str) -> RentalBenefit:
    try:
        coverage_type = RentalCoverageType(data.get("coverage_type"))
    except ValueError:
        raise HydrationError(
            f"{context}: rental coverage_type must be 'primary' or 'secondary', got {data.get('coverage_type')!r}"
        )
    return RentalBenefit(
        coverage_type=coverage_type,
        max_coverage=_number(data, "max_coverage", context),
        max_days=int(_number(data, "max_days", context)),
        what_is_covered=frozen_strings(data.get("what_is_covered")),
        what_is_not_covered=frozen_strings(data.get("what_is_not_covered")),
        vehicle_exclusions=frozen_strings(data.get("vehicle_exclusions")),
        country_exclusions=frozen_strings(data.get("country_exclusions")),
        country_notes=data.get("country_notes"),
        activation_steps=frozen_strings(data.get("activation_steps")),
    )


def _rental_details(block: RentalBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.TRAVEL_RENTAL,
        coverage_level=level,
        limits=_limits(
            coverage_type=block.coverage_type.value,
            max_coverage=block.max_coverage,
            max_days=block.max_days,
        ),
        covered=block.what_is_covered,
        not_covered=block.what_is_not_covered + block.vehicle_exclusions,
        conditions=block.activation_steps,
        notes=frozen_strings(block.country_notes),
    )


def _build_trip(data: Mapping[str, Any], context: str) -> TripBenefit:
    return TripBenefit(
        cancellation_coverage=_number(data, "cancellation_coverage", context),
        interruption_coverage=_number(data, "interruption_coverage", context),
        delay_coverage=_optional_number(data, "delay_coverage") or 0,
        delay_threshold_hours=_optional_number(data, "delay_threshold_hours") or 0,
        covered_reasons=frozen_strings(data.get("covered_reasons")),
        exclusions=frozen_strings(data.get("exclusions")),
    )


def _trip_details(block: TripBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.TRAVEL_TRIP,
        coverage_level=level,
        limits=_limits(
            cancellation_coverage=block.cancellation_coverage,
            interruption_coverage=block.interruption_coverage,
            delay_coverage=block.delay_coverage,
            threshold_hours=block.delay_threshold_hours,
        ),
        covered=block.covered_reasons,
        not_covered=block.exclusions,
    )


def _build_baggage(data: Mapping[str, Any], context: str) -> BaggageBenefit:
    return BaggageBenefit(
        delay_coverage=_optional_number(data, "delay_coverage") or 0,
        delay_threshold_hours=_optional_number(data, "delay_threshold_hours") or 0,
        lost_baggage_coverage=_number(data, "lost_baggage_coverage", context),
        coverage_details=frozen_strings(data.get("coverage_details")),
        exclusions=frozen_strings(data.get("exclusions")),
    )


def _baggage_details(block: BaggageBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.TRAVEL_BAGGAGE,
        coverage_level=level,
        limits=_limits(
            delay_coverage=block.delay_coverage,
            threshold_hours=block.delay_threshold_hours,
            lost_baggage_coverage=block.lost_baggage_coverage,
        ),
        covered=block.coverage_details,
        not_covered=block.exclusions,
    )


def _build_perks(data: Mapping[str, Any], context: str) -> TravelPerksBenefit:
    credits = []
    for raw in data.get("travel_credits") or ():
        credits.append(TravelCredit(
            amount=_number(raw, "amount", context),
            description=str(raw.get("description", "")),
        ))
    return TravelPerksBenefit(
        lounge_access=frozen_strings(data.get("lounge_access")),
        travel_credits=tuple(credits),
        other_perks=frozen_strings(data.get("other_perks")),
    )


def _perks_details(block: TravelPerksBenefit, level: CoverageLevel) -> BenefitDetails:
    credit_lines = tuple(f"${c.amount:,.0f} {c.description}" for c in block.travel_credits)
    return BenefitDetails(
        category_id=CategoryId.TRAVEL_PERKS,
        coverage_level=level,
        limits=_limits(
            lounge_networks=len(block.lounge_access),
            travel_credit_total=sum(c.amount for c in block.travel_credits),
        ),
        covered=block.lounge_access + credit_lines + block.other_perks,
    )


def _build_emergency(data: Mapping[str, Any], context: str) -> EmergencyBenefit:
    return EmergencyBenefit(
        evacuation_coverage=_number(data, "evacuation_coverage", context),
        medical_coverage=_optional_number(data, "medical_coverage"),
        services=frozen_strings(data.get("services")),
        coverage_details=frozen_strings(data.get("coverage_details")),
        exclusions=frozen_strings(data.get("exclusions")),
    )


def _emergency_details(block: EmergencyBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.TRAVEL_EMERGENCY,
        coverage_level=level,
        limits=_limits(
            evacuation_coverage=block.evacuation_coverage,
            medical_coverage=block.medical_coverage,
        ),
        covered=block.services,
        not_covered=block.exclusions,
        conditions=block.coverage_details,
    )


def _build_purchase(data: Mapping[str, Any], context: str) -> PurchaseBenefit:
    return PurchaseBenefit(
        max_per_claim=_number(data, "max_per_claim", context),
        max_per_year=_number(data, "max_per_year", context),
        coverage_period_days=int(_number(data, "coverage_period_days", context)),
        covered=frozen_strings(data.get("covered")),
        not_covered=frozen_strings(data.get("not_covered")),
    )


def _purchase_details(block: PurchaseBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.PURCHASE_PROTECTION,
        coverage_level=level,
        limits=_limits(
            max_per_claim=block.max_per_claim,
            max_per_year=block.max_per_year,
            coverage_period_days=block.coverage_period_days,
        ),
        covered=block.covered,
        not_covered=block.not_covered,
    )


def _build_warranty(data: Mapping[str, Any], context: str) -> WarrantyBenefit:
    return WarrantyBenefit(
        extension_years=_number(data, "extension_years", context),
        max_original_warranty_years=_number(data, "max_original_warranty_years", context),
        max_per_claim=_number(data, "max_per_claim", context),
        coverage_details=frozen_strings(data.get("coverage_details")),
        exclusions=frozen_strings(data.get("exclusions")),
    )


def _warranty_details(block: WarrantyBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.PURCHASE_WARRANTY,
        coverage_level=level,
        limits=_limits(
            extension_years=block.extension_years,
            max_original_warranty_years=block.max_original_warranty_years,
            max_per_claim=block.max_per_claim,
        ),
        covered=block.coverage_details,
        not_covered=block.exclusions,
    )


def _build_return(data: Mapping[str, Any], context: str) -> ReturnBenefit:
    return ReturnBenefit(
        max_per_item=_number(data, "max_per_item", context),
        max_per_year=_number(data, "max_per_year", context),
        return_window_days=int(_number(data, "return_window_days", context)),
        coverage_details=frozen_strings(data.get("coverage_details")),
        exclusions=frozen_strings(data.get("exclusions")),
    )


def _return_details(block: ReturnBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.PURCHASE_RETURN,
        coverage_level=level,
        limits=_limits(
            max_per_claim=block.max_per_item,
            max_per_year=block.max_per_year,
            coverage_period_days=block.return_window_days,
        ),
        covered=block.coverage_details,
        not_covered=block.exclusions,
    )


def _build_phone(data: Mapping[str, Any], context: str) -> PhoneBenefit:
    return PhoneBenefit(
        max_per_claim=_number(data, "max_per_claim", context),
        max_claims_per_year=int(_number(data, "max_claims_per_year", context)),
        deductible=_number(data, "deductible", context),
        coverage_details=frozen_strings(data.get("coverage_details")),
        requirements=frozen_strings(data.get("requirements")),
        exclusions=frozen_strings(data.get("exclusions")),
    )


def _phone_details(block: PhoneBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.PHONE_PROTECTION,
        coverage_level=level,
        limits=_limits(
            max_per_claim=block.max_per_claim,
            max_claims=block.max_claims_per_year,
            deductible=block.deductible,
        ),
        covered=block.coverage_details,
        not_covered=block.exclusions,
        conditions=block.requirements,
    )


def _build_roadside(data: Mapping[str, Any], context: str) -> RoadsideBenefit:
    return RoadsideBenefit(
        provider=str(data.get("provider") or "Card issuer"),
        towing_miles=_number(data, "towing_miles", context),
        services=frozen_strings(data.get("services")),
        coverage_details=frozen_strings(data.get("coverage_details")),
        limitations=frozen_strings(data.get("limitations")),
    )


def _roadside_details(block: RoadsideBenefit, level: CoverageLevel) -> BenefitDetails:
    return BenefitDetails(
        category_id=CategoryId.ROADSIDE_ASSISTANCE,
        coverage_level=level,
        limits=_limits(towing_miles=block.towing_miles),
        covered=block.services,
        not_covered=block.limitations,
        conditions=block.coverage_details,
        claim_process=f"Call {block.provider}",
    )


# slot name -> (category, template kind, block builder, details builder)
CardSlot = Tuple[CategoryId, TemplateKind, Callable, Callable]

CARD_SLOTS: Dict[str, CardSlot] = {
    "rental": (CategoryId.TRAVEL_RENTAL, TemplateKind.RENTAL_EXCLUSIONS, _build_rental, _rental_details),
    "trip_protection": (CategoryId.TRAVEL_TRIP, TemplateKind.TRIP_PROTECTION, _build_trip, _trip_details),
    "baggage_protection": (CategoryId.TRAVEL_BAGGAGE, TemplateKind.BAGGAGE_PROTECTION, _build_baggage, _baggage_details),
    "travel_perks": (CategoryId.TRAVEL_PERKS, TemplateKind.TRAVEL_PERKS, _build_perks, _perks_details),
    "emergency_assistance": (CategoryId.TRAVEL_EMERGENCY, TemplateKind.EMERGENCY_ASSISTANCE, _build_emergency, _emergency_details),
    "purchase_protection": (CategoryId.PURCHASE_PROTECTION, TemplateKind.PURCHASE_PROTECTION, _build_purchase, _purchase_details),
    "extended_warranty": (CategoryId.PURCHASE_WARRANTY, TemplateKind.EXTENDED_WARRANTY, _build_warranty, _warranty_details),
    "return_protection": (CategoryId.PURCHASE_RETURN, TemplateKind.RETURN_PROTECTION, _build_return, _return_details),
    "cell_phone_protection": (CategoryId.PHONE_PROTECTION, TemplateKind.CELL_PHONE_PROTECTION, _build_phone, _phone_details),
    "roadside_assistance": (CategoryId.ROADSIDE_ASSISTANCE, TemplateKind.ROADSIDE_ASSISTANCE, _build_roadside, _roadside_details),
}


def _slot_data(
    card_id: str,
    slot: str,
    raw: Any,
    kind: TemplateKind,
    library: BenefitTemplateLibrary,
) -> Optional[Dict[str, Any]]:
    """
    Resolve a slot's raw value into a flat field dict.

    Returns None when a referenced template does not exist, which leaves
    the benefit absent on the card.
    """
    if slot == "rental":
        if not isinstance(raw, Mapping):
            raise HydrationError(f"Card '{card_id}': rental benefit must be inline data")
        data = {}
        exclusions_key = raw.get("exclusions_template")
        if exclusions_key:
            template = library.get_template(kind, exclusions_key)
            if template is None:
                logger.warning(
                    "Card '%s': rental exclusions template '%s' not found; exclusion text omitted",
                    card_id, exclusions_key,
                )
            else:
                data.update(template.terms)
        data.update({k: v for k, v in raw.items() if k != "exclusions_template"})
        return data

    if isinstance(raw, str):
        template = library.get_template(kind, raw)
        if template is None:
            logger.warning("Card '%s': %s template '%s' not found; benefit omitted", card_id, slot, raw)
            return None
        return dict(template.terms)

    if isinstance(raw, Mapping):
        return dict(raw)

    raise HydrationError(f"Card '{card_id}': {slot} must be a template key or inline data")


def hydrate_card(
    record: Mapping[str, Any],
    issuer: str,
    library: Optional[BenefitTemplateLibrary] = None,
    metadata: Optional[SourceMetadata] = None,
) -> CoverageSource:
    """
    Hydrate one credit card record.

    Args:
        record: compact card record (id, name, network, annual_fee, tier,
            categories, benefits keyed by slot name)
        issuer: issuer name from the data file
        library: template library (defaults to the process-wide one)
        metadata: data file metadata

    Returns:
        CoverageSource of kind credit-card

    Raises:
        HydrationError: if a required field is missing or malformed
    """
    library = library or get_template_library()
    card_id = record.get("id")
    if not card_id:
        raise HydrationError(f"{issuer} card record has no id")
    for required in ("name", "network", "tier"):
        if not record.get(required):
            raise HydrationError(f"Card '{card_id}' is missing '{required}'")

    blocks: Dict[str, Any] = {}
    benefits: Dict[CategoryId, BenefitDetails] = {}
    raw_benefits = record.get("benefits") or {}

    for slot, raw in raw_benefits.items():
        if slot not in CARD_SLOTS:
            raise HydrationError(f"Card '{card_id}': unknown benefit slot '{slot}'")
        category_id, kind, build_block, build_details = CARD_SLOTS[slot]
        context = f"Card '{card_id}' {slot}"

        data = _slot_data(card_id, slot, raw, kind, library)
        if data is None:
            continue

        block = build_block(data, context)
        default_level = CoverageLevel.FULL
        if slot == "rental" and block.coverage_type == RentalCoverageType.SECONDARY:
            default_level = CoverageLevel.PARTIAL

        blocks[slot] = block
        benefits[category_id] = build_details(block, _level(data, default_level, context))

    payload = CardPayload(
        network=record["network"],
        annual_fee=_number(record, "annual_fee", f"Card '{card_id}'"),
        tier=record["tier"],
        **blocks,
    )

    return CoverageSource(
        kind=SourceKind.CREDIT_CARD,
        id=card_id,
        name=record["name"],
        full_name=record.get("full_name") or record["name"],
        provider=record.get("issuer") or issuer,
        categories=_resolve_categories(card_id, record.get("categories") or [], benefits),
        benefits=frozen_mapping(benefits),
        metadata=metadata or UNVERSIONED,
        card=payload,
    )


# =============================================================================
# Protection plans
# =============================================================================

def parse_cost(raw: Any, context: str) -> PlanCost:
    if not isinstance(raw, Mapping):
        raise HydrationError(f"{context}: cost must be an object with a cadence")
    try:
        cadence = PlanCostCadence(raw.get("cadence"))
    except ValueError:
        raise HydrationError(f"{context}: invalid cost cadence {raw.get('cadence')!r}")
    return PlanCost(
        cadence=cadence,
        amount=_optional_number(raw, "amount"),
        note=raw.get("note"),
    )


def hydrate_plan(
    record: Mapping[str, Any],
    provider: str,
    metadata: Optional[SourceMetadata] = None,
) -> CoverageSource:
    """Hydrate one protection plan record. Benefits are inline, keyed by category."""
    plan_id = record.get("id")
    if not plan_id:
        raise HydrationError(f"{provider} plan record has no id")
    if not record.get("name"):
        raise HydrationError(f"Plan '{plan_id}' is missing 'name'")
    context = f"Plan '{plan_id}'"

    try:
        plan_type = PlanType(record.get("plan_type"))
    except ValueError:
        raise HydrationError(f"{context}: invalid plan_type {record.get('plan_type')!r}")

    benefits: Dict[CategoryId, BenefitDetails] = {}
    for raw_category, raw in (record.get("benefits") or {}).items():
        category_id = _category(raw_category, context)
        benefits[category_id] = parse_benefit_details(category_id, raw, f"{context} {raw_category}")

    payload = PlanPayload(
        plan_type=plan_type,
        cost=parse_cost(record.get("cost"), context),
        eligible_products=frozen_strings(record.get("eligible_products")),
        purchase_requirements=frozen_strings(record.get("purchase_requirements")),
    )

    return CoverageSource(
        kind=SourceKind.PROTECTION_PLAN,
        id=plan_id,
        name=record["name"],
        full_name=record.get("full_name") or record["name"],
        provider=record.get("provider") or provider,
        categories=_resolve_categories(plan_id, record.get("categories") or [], benefits),
        benefits=frozen_mapping(benefits),
        metadata=metadata or UNVERSIONED,
        plan=payload,
    )


# =============================================================================
# Batch loading
# =============================================================================

def hydrate_card_document(document: Mapping[str, Any], library: Optional[BenefitTemplateLibrary] = None) -> List[CoverageSource]:
    issuer = document.get("issuer", "Unknown")
    metadata = parse_metadata(document["metadata"]) if document.get("metadata") else None
    return [hydrate_card(record, issuer, library, metadata) for record in document.get("cards", [])]


def hydrate_plan_document(document: Mapping[str, Any]) -> List[CoverageSource]:
    provider = document.get("provider", "Unknown")
    metadata = parse_metadata(document["metadata"]) if document.get("metadata") else None
    return [hydrate_plan(record, provider, metadata) for record in document.get("plans", [])]


def load_card_sources(data_dir: Optional[Path] = None, library: Optional[BenefitTemplateLibrary] = None) -> List[CoverageSource]:
    """Hydrate every card under <data_dir>/sources/credit_cards."""
    cards_dir = Path(data_dir or StoreConfig.DATA_DIR) / "sources" / "credit_cards"
    cards: List[CoverageSource] = []
    for path in sorted(cards_dir.glob("*.json")):
        cards.extend(hydrate_card_document(load_json(path), library))
    logger.info("Hydrated %d credit cards from %s", len(cards), cards_dir)
    return cards


def load_plan_sources(data_dir: Optional[Path] = None) -> List[CoverageSource]:
    """Hydrate every plan under <data_dir>/sources/protection_plans."""
    plans_dir = Path(data_dir or StoreConfig.DATA_DIR) / "sources" / "protection_plans"
    plans: List[CoverageSource] = []
    for path in sorted(plans_dir.glob("*.json")):
        plans.extend(hydrate_plan_document(load_json(path)))
    logger.info("Hydrated %d protection plans from %s", len(plans), plans_dir)
    return plans
