"""
Policy-type templates and uploaded policy validation.

Each policy type (auto, home, renters, umbrella) has a template describing
which categories it contributes to, which extracted fields are required,
how extracted coverage fields map onto benefits, and the default benefits
used when a policy does not supply category-specific detail.

Parsed policies must pass validate_parsed_policy() before they become
policy sources; create_policy_source() enforces this.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from engine.config import StoreConfig
from engine.errors import HydrationError, InvalidPolicyError
from engine.hydration import parse_benefit_details
from engine.models import (
    BenefitDetails,
    CategoryId,
    CoverageLevel,
    CoverageSource,
    PolicyOrigin,
    PolicyPayload,
    PolicyType,
    SourceKind,
    SourceMetadata,
    frozen_mapping,
    frozen_strings,
)
from engine.templates import freeze_value, load_json

logger = logging.getLogger(__name__)

POLICY_SOURCE_VERSION = "1.0.0"


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    label: str
    type: str
    description: Optional[str] = None


@dataclass(frozen=True)
class BenefitMapping:
    """How extracted coverage fields become a benefit for one category."""
    category_id: CategoryId
    coverage_level: CoverageLevel
    limits: Mapping[str, str] = field(default_factory=frozen_mapping)  # field name -> limit key
    covered: Tuple[str, ...] = ()
    not_covered: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyTemplate:
    policy_type: PolicyType
    display_name: str
    description: str
    categories: Tuple[CategoryId, ...]
    required_fields: Tuple[str, ...]
    optional_fields: Tuple[str, ...] = ()
    identifier_fields: Tuple[str, ...] = ()
    field_definitions: Mapping[str, FieldDefinition] = field(default_factory=frozen_mapping)
    benefit_mapping: Mapping[CategoryId, BenefitMapping] = field(default_factory=frozen_mapping)
    default_benefits: Mapping[CategoryId, BenefitDetails] = field(default_factory=frozen_mapping)


class ParsedPolicyData(BaseModel):
    """Approved output of the document extraction step for one policy."""
    policy_number: Optional[str] = None
    carrier: Optional[str] = None
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None
    named_insured: Optional[str] = None
    coverages: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("policy_number", "carrier", "effective_date", "expiration_date", "named_insured")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank identifiers as not extracted"""
        if v is not None and not v.strip():
            return None
        return v.strip() if v is not None else v


@dataclass(frozen=True)
class PolicyValidation:
    valid: bool
    missing_fields: Tuple[str, ...] = ()


# =============================================================================
# Template loading
# =============================================================================

def hydrate_policy_template(raw: Mapping[str, Any]) -> PolicyTemplate:
    """
    Hydrate one policy-type template record.

    Raises:
        HydrationError: on an unknown policy type or category, or when the
            default benefits do not cover exactly the declared categories
    """
    try:
        policy_type = PolicyType(raw.get("policy_type"))
    except ValueError:
        raise HydrationError(f"Unknown policy type {raw.get('policy_type')!r}")
    context = f"Policy template '{policy_type.value}'"

    try:
        categories = tuple(CategoryId(c) for c in raw.get("categories") or ())
    except ValueError as e:
        raise HydrationError(f"{context}: {e}")

    defaults: Dict[CategoryId, BenefitDetails] = {}
    for raw_category, benefit in (raw.get("default_benefits") or {}).items():
        category_id = CategoryId(raw_category)
        defaults[category_id] = parse_benefit_details(category_id, benefit, f"{context} {raw_category}")
    if set(defaults) != set(categories):
        raise HydrationError(f"{context}: default benefits must cover exactly its categories")

    mappings: Dict[CategoryId, BenefitMapping] = {}
    for raw_category, mapping in (raw.get("benefit_mapping") or {}).items():
        category_id = CategoryId(raw_category)
        if category_id not in categories:
            raise HydrationError(f"{context}: benefit mapping for undeclared category '{raw_category}'")
        mappings[category_id] = BenefitMapping(
            category_id=category_id,
            coverage_level=CoverageLevel(mapping.get("coverage_level", "full")),
            limits=frozen_mapping(mapping.get("limits")),
            covered=frozen_strings(mapping.get("covered")),
            not_covered=frozen_strings(mapping.get("not_covered")),
        )

    schema = raw.get("extraction_schema") or {}
    definitions = {
        name: FieldDefinition(
            name=name,
            label=definition.get("label", name),
            type=definition.get("type", "string"),
            description=definition.get("description"),
        )
        for name, definition in (raw.get("field_definitions") or {}).items()
    }

    return PolicyTemplate(
        policy_type=policy_type,
        display_name=raw.get("display_name") or policy_type.value.title(),
        description=raw.get("description", ""),
        categories=categories,
        required_fields=frozen_strings(schema.get("required")),
        optional_fields=frozen_strings(schema.get("optional")),
        identifier_fields=frozen_strings(schema.get("identifiers")),
        field_definitions=frozen_mapping(definitions),
        benefit_mapping=frozen_mapping(mappings),
        default_benefits=frozen_mapping(defaults),
    )


def load_policy_templates(data_dir: Optional[Path] = None) -> Dict[PolicyType, PolicyTemplate]:
    """Hydrate every template under <data_dir>/policy_templates."""
    templates_dir = Path(data_dir or StoreConfig.DATA_DIR) / "policy_templates"
    templates = {}
    for path in sorted(templates_dir.glob("*.json")):
        template = hydrate_policy_template(load_json(path))
        templates[template.policy_type] = template
    logger.info("Loaded %d policy templates from %s", len(templates), templates_dir)
    return templates


@lru_cache(maxsize=1)
def get_policy_templates() -> Mapping[PolicyType, PolicyTemplate]:
    return frozen_mapping(load_policy_templates())


def get_policy_template(
    policy_type: Union[PolicyType, str],
    templates: Optional[Mapping[PolicyType, PolicyTemplate]] = None,
) -> PolicyTemplate:
    templates = templates if templates is not None else get_policy_templates()
    try:
        return templates[PolicyType(policy_type)]
    except (ValueError, KeyError):
        raise HydrationError(f"No policy template for type {policy_type!r}")


# =============================================================================
# Validation and policy sources
# =============================================================================

def _as_parsed(parsed: Union[ParsedPolicyData, Mapping[str, Any]]) -> ParsedPolicyData:
    if isinstance(parsed, ParsedPolicyData):
        return parsed
    return ParsedPolicyData.model_validate(dict(parsed))


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def validate_parsed_policy(
    policy_type: Union[PolicyType, str],
    parsed: Union[ParsedPolicyData, Mapping[str, Any]],
    templates: Optional[Mapping[PolicyType, PolicyTemplate]] = None,
) -> PolicyValidation:
    """
    Check parsed policy data against the type's required fields.

    A required field is missing when it is absent from the extracted
    coverages or null/blank.
    """
    template = get_policy_template(policy_type, templates)
    coverages = _as_parsed(parsed).coverages
    missing = tuple(name for name in template.required_fields if not _is_present(coverages.get(name)))
    return PolicyValidation(valid=not missing, missing_fields=missing)


def _mapped_benefit(mapping: BenefitMapping, coverages: Mapping[str, Any]) -> Optional[BenefitDetails]:
    """Benefit built from extracted fields, or None when none of the mapped fields were extracted."""
    limits = {
        limit_key: coverages[field_name]
        for field_name, limit_key in mapping.limits.items()
        if _is_present(coverages.get(field_name)) and coverages.get(field_name) is not False
    }
    if not limits:
        return None
    return BenefitDetails(
        category_id=mapping.category_id,
        coverage_level=mapping.coverage_level,
        limits=frozen_mapping(limits),
        covered=mapping.covered,
        not_covered=mapping.not_covered,
    )


def create_policy_source(
    policy_type: Union[PolicyType, str],
    parsed: Union[ParsedPolicyData, Mapping[str, Any]],
    document_id: Optional[str] = None,
    uploaded_at: Optional[str] = None,
    policy_id: Optional[str] = None,
    templates: Optional[Mapping[PolicyType, PolicyTemplate]] = None,
) -> CoverageSource:
    """
    Build a policy source from validated extraction output.

    Args:
        policy_type: auto | home | renters | umbrella
        parsed: extracted identifiers and coverage fields
        document_id: originating uploaded document, if any (sets origin to "document")
        uploaded_at: ISO timestamp (defaults to now, UTC)
        policy_id: explicit id (defaults to a generated one)

    Raises:
        InvalidPolicyError: if required coverage fields are missing
    """
    template = get_policy_template(policy_type, templates)
    parsed = _as_parsed(parsed)

    validation = validate_parsed_policy(template.policy_type, parsed, {template.policy_type: template})
    if not validation.valid:
        raise InvalidPolicyError(template.policy_type.value, list(validation.missing_fields))

    benefits = {}
    for category_id in template.categories:
        mapping = template.benefit_mapping.get(category_id)
        mapped = _mapped_benefit(mapping, parsed.coverages) if mapping else None
        benefits[category_id] = mapped or template.default_benefits[category_id]

    uploaded_at = uploaded_at or datetime.now(timezone.utc).isoformat()
    origin = PolicyOrigin.DOCUMENT if document_id else PolicyOrigin.MANUAL

    payload = PolicyPayload(
        policy_type=template.policy_type,
        uploaded_at=uploaded_at,
        origin=origin,
        policy_number=parsed.policy_number,
        carrier=parsed.carrier,
        effective_date=parsed.effective_date,
        expiration_date=parsed.expiration_date,
        document_id=document_id,
        named_insured=parsed.named_insured,
        coverages=freeze_value(dict(parsed.coverages)),
    )

    source = CoverageSource(
        kind=SourceKind.POLICY,
        id=policy_id or f"policy_{template.policy_type.value}_{uuid.uuid4().hex[:12]}",
        name=template.display_name,
        full_name=f"{parsed.carrier} {template.display_name}" if parsed.carrier else template.display_name,
        provider=parsed.carrier or "Unknown carrier",
        categories=template.categories,
        benefits=frozen_mapping(benefits),
        metadata=SourceMetadata(
            last_updated=uploaded_at,
            version=POLICY_SOURCE_VERSION,
            notes=f"Extracted from document {document_id}" if document_id else "Entered manually",
        ),
        policy=payload,
    )
    logger.info("Created %s policy source %s (%s)", template.policy_type.value, source.id, origin.value)
    return source


# =============================================================================
# Helpers
# =============================================================================

def policy_has_coverage(policy: CoverageSource, field_name: str) -> bool:
    """True when the policy extracted a non-empty, non-zero value for a coverage field."""
    if policy.policy is None:
        return False
    value = policy.policy.coverages.get(field_name)
    if not _is_present(value) or value is False:
        return False
    if isinstance(value, (int, float)) and value == 0:
        return False
    return True


def get_field_definition(
    policy_type: Union[PolicyType, str],
    field_name: str,
    templates: Optional[Mapping[PolicyType, PolicyTemplate]] = None,
) -> Optional[FieldDefinition]:
    return get_policy_template(policy_type, templates).field_definitions.get(field_name)


def policy_display_name(
    policy_type: Union[PolicyType, str],
    templates: Optional[Mapping[PolicyType, PolicyTemplate]] = None,
) -> str:
    return get_policy_template(policy_type, templates).display_name


def policy_covered_categories(
    policy_type: Union[PolicyType, str],
    templates: Optional[Mapping[PolicyType, PolicyTemplate]] = None,
) -> Tuple[CategoryId, ...]:
    return get_policy_template(policy_type, templates).categories


def all_policy_fields(template: PolicyTemplate) -> List[str]:
    """Required then optional coverage field names, without duplicates."""
    seen = []
    for name in template.required_fields + template.optional_fields:
        if name not in seen:
            seen.append(name)
    return seen
