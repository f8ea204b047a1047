"""
Coverage query engine.
Answers category-level coverage questions across the sources a user has
selected. An engine is built from a snapshot of the selection and never
changes afterwards; build a new one when the selection changes.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from engine.assistant import CoverageDataForAssistant, build_assistant_data
from engine.catalog import CoverageCatalog, get_catalog
from engine.models import (
    ALL_CATEGORIES,
    CategoryId,
    CoverageLevel,
    CoverageSelection,
    CoverageSource,
    CoverageStatus,
    RentalCoverageType,
    SourceKind,
    frozen_mapping,
)

logger = logging.getLogger(__name__)

# Category -> limit that best summarizes a source's coverage for comparison.
KEY_LIMIT_FIELDS: Dict[CategoryId, str] = {
    CategoryId.TRAVEL_RENTAL: "max_coverage",
    CategoryId.TRAVEL_TRIP: "cancellation_coverage",
    CategoryId.TRAVEL_BAGGAGE: "lost_baggage_coverage",
    CategoryId.PURCHASE_PROTECTION: "max_per_claim",
    CategoryId.TRAVEL_EMERGENCY: "evacuation_coverage",
}

SECONDARY_RENTAL_WARNING = "All cards have secondary coverage - your personal auto insurance applies first"


@dataclass(frozen=True)
class CategorySources:
    cards: Tuple[CoverageSource, ...] = ()
    plans: Tuple[CoverageSource, ...] = ()
    policies: Tuple[CoverageSource, ...] = ()

    @property
    def total(self) -> int:
        return len(self.cards) + len(self.plans) + len(self.policies)

    def all(self) -> Tuple[CoverageSource, ...]:
        """Every source in selection order: cards, then plans, then policies."""
        return self.cards + self.plans + self.policies


@dataclass(frozen=True)
class ComparisonCell:
    has_category: bool
    coverage_level: CoverageLevel
    key_limit: Optional[float] = None
    highlights: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ComparisonMatrix:
    source_ids: Tuple[str, ...]
    categories: Tuple[CategoryId, ...]
    cells: Mapping[str, Mapping[CategoryId, ComparisonCell]] = field(default_factory=frozen_mapping)

    def cell(self, source_id: str, category_id: CategoryId) -> Optional[ComparisonCell]:
        return self.cells.get(source_id, {}).get(category_id)


@dataclass(frozen=True)
class CategoryCoverageInfo:
    category_id: CategoryId
    status: CoverageStatus
    sources: Tuple[CoverageSource, ...] = ()
    best_source: Optional[CoverageSource] = None
    highlights: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AggregatedCoverage:
    categories: Mapping[CategoryId, CategoryCoverageInfo]
    sources: Tuple[CoverageSource, ...]
    gaps: Tuple[CategoryId, ...]
    total_annual_cost: float


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for source_id in ids:
        if source_id not in seen:
            seen.append(source_id)
    return seen


def _money(amount: float) -> str:
    return f"${amount:,.0f}"


class CoverageQueryEngine:
    """
    Read-only query surface over one selection.

    Card and plan ids that no longer resolve in the catalog are dropped
    silently. Policies must already be validated policy sources.
    """

    def __init__(
        self,
        card_ids: Sequence[str] = (),
        plan_ids: Sequence[str] = (),
        policies: Sequence[CoverageSource] = (),
        catalog: Optional[CoverageCatalog] = None,
    ):
        self.catalog = catalog or get_catalog()

        cards = []
        for card_id in _dedupe(card_ids):
            card = self.catalog.get_card(card_id)
            if card is None:
                logger.debug("Dropping unknown card id '%s'", card_id)
                continue
            cards.append(card)

        plans = []
        for plan_id in _dedupe(plan_ids):
            plan = self.catalog.get_plan(plan_id)
            if plan is None:
                logger.debug("Dropping unknown plan id '%s'", plan_id)
                continue
            plans.append(plan)

        for policy in policies:
            if not isinstance(policy, CoverageSource) or policy.kind != SourceKind.POLICY:
                raise ValueError(f"Expected a validated policy source, got {policy!r}")

        self._cards: Tuple[CoverageSource, ...] = tuple(cards)
        self._plans: Tuple[CoverageSource, ...] = tuple(plans)
        self._policies: Tuple[CoverageSource, ...] = tuple(policies)
        self._by_id = {s.id: s for s in self._cards + self._plans + self._policies}

    # =========================================================================
    # Selected sources
    # =========================================================================

    @property
    def credit_cards(self) -> List[CoverageSource]:
        return list(self._cards)

    @property
    def protection_plans(self) -> List[CoverageSource]:
        return list(self._plans)

    @property
    def policies(self) -> List[CoverageSource]:
        return list(self._policies)

    @property
    def all_sources(self) -> List[CoverageSource]:
        return list(self._cards + self._plans + self._policies)

    def cards_by_issuer(self, issuer: str) -> List[CoverageSource]:
        wanted = issuer.lower()
        return [c for c in self._cards if c.provider.lower() == wanted]

    def cards_with_primary_rental(self) -> List[CoverageSource]:
        return [c for c in self._cards if _rental_type(c) == RentalCoverageType.PRIMARY]

    def has_any_primary_rental(self) -> bool:
        return bool(self.cards_with_primary_rental())

    def _policy_categories(self, policy: CoverageSource) -> Tuple[CategoryId, ...]:
        """Policies contribute the categories declared by their policy type."""
        template = self.catalog.get_policy_template(policy.policy.policy_type)
        if template is not None:
            return template.categories
        return policy.categories

    def _covers(self, source: CoverageSource, category_id: CategoryId) -> bool:
        if source.kind == SourceKind.POLICY:
            return category_id in self._policy_categories(source)
        return source.covers(category_id)

    # =========================================================================
    # Category queries
    # =========================================================================

    def sources_for_category(self, category_id: CategoryId) -> CategorySources:
        category_id = CategoryId(category_id)
        return CategorySources(
            cards=tuple(c for c in self._cards if c.covers(category_id)),
            plans=tuple(p for p in self._plans if p.covers(category_id)),
            policies=tuple(p for p in self._policies if self._covers(p, category_id)),
        )

    def coverage_status(self, category_id: CategoryId) -> CoverageStatus:
        """
        Status from the number of contributing sources:
        0 -> none, exactly 1 -> partial, 2 or more -> covered.
        """
        total = self.sources_for_category(category_id).total
        if total == 0:
            return CoverageStatus.NONE
        if total >= 2:
            return CoverageStatus.COVERED
        return CoverageStatus.PARTIAL

    def coverage_gaps(self) -> List[CategoryId]:
        return [c for c in ALL_CATEGORIES if self.sources_for_category(c).total == 0]

    def best_source_for_category(self, category_id: CategoryId) -> Optional[CoverageSource]:
        """
        Pick one source for a category.

        For rental: primary coverage wins, then the highest max coverage
        (earliest selected on a tie). Otherwise, and for every other
        category, the first matching source in selection order.
        """
        category_id = CategoryId(category_id)
        sources = self.sources_for_category(category_id)

        if category_id == CategoryId.TRAVEL_RENTAL:
            primary = [c for c in sources.cards if _rental_type(c) == RentalCoverageType.PRIMARY]
            if primary:
                # max() keeps the first of equal keys
                return max(primary, key=lambda c: c.card.rental.max_coverage)

        ordered = sources.all()
        return ordered[0] if ordered else None

    # =========================================================================
    # Comparison
    # =========================================================================

    def key_limit(self, source: CoverageSource, category_id: CategoryId) -> Optional[float]:
        field_name = KEY_LIMIT_FIELDS.get(CategoryId(category_id))
        if field_name is None:
            return None
        benefit = source.benefit(category_id)
        if benefit is None:
            return None
        return benefit.numeric_limit(field_name)

    def source_highlights(self, source: CoverageSource, category_id: CategoryId) -> Tuple[str, ...]:
        if not self._covers(source, category_id):
            return ()
        if source.kind == SourceKind.CREDIT_CARD:
            return _card_highlights(source, category_id)
        benefit = source.benefit(category_id)
        return benefit.covered[:2] if benefit else ()

    def compare_sources(
        self,
        source_ids: Sequence[str],
        categories: Optional[Sequence[CategoryId]] = None,
    ) -> ComparisonMatrix:
        """
        Build a source x category matrix.

        Ids resolve against the selected sources first, then the catalog;
        ids that resolve nowhere are dropped. categories=None compares every
        category; an empty sequence compares none.
        """
        if categories is None:
            categories = ALL_CATEGORIES
        else:
            categories = tuple(CategoryId(c) for c in categories)

        sources = []
        for source_id in _dedupe(source_ids):
            source = self._by_id.get(source_id) or self.catalog.get_source(source_id)
            if source is None:
                logger.debug("Dropping unknown source id '%s' from comparison", source_id)
                continue
            sources.append(source)

        cells = {}
        for source in sources:
            row = {}
            for category_id in categories:
                has_category = self._covers(source, category_id)
                benefit = source.benefit(category_id) if has_category else None
                row[category_id] = ComparisonCell(
                    has_category=has_category,
                    coverage_level=benefit.coverage_level if benefit else CoverageLevel.NONE,
                    key_limit=self.key_limit(source, category_id),
                    highlights=self.source_highlights(source, category_id),
                )
            cells[source.id] = frozen_mapping(row)

        return ComparisonMatrix(
            source_ids=tuple(s.id for s in sources),
            categories=categories,
            cells=frozen_mapping(cells),
        )

    # =========================================================================
    # Aggregation
    # =========================================================================

    def total_annual_cost(self) -> float:
        """Card annual fees plus yearly plan costs (monthly x 12; one-time and variable excluded)."""
        cards_cost = sum(c.card.annual_fee for c in self._cards)
        plans_cost = sum(p.plan.cost.annualized() for p in self._plans)
        return cards_cost + plans_cost

    def aggregated_coverage(self) -> AggregatedCoverage:
        categories = {}
        gaps = []
        for category_id in ALL_CATEGORIES:
            sources = self.sources_for_category(category_id)
            if sources.total == 0:
                gaps.append(category_id)
            categories[category_id] = CategoryCoverageInfo(
                category_id=category_id,
                status=self.coverage_status(category_id),
                sources=sources.all(),
                best_source=self.best_source_for_category(category_id),
                highlights=_category_highlights(category_id, sources),
                warnings=_category_warnings(category_id, sources),
            )

        return AggregatedCoverage(
            categories=frozen_mapping(categories),
            sources=tuple(self.all_sources),
            gaps=tuple(gaps),
            total_annual_cost=self.total_annual_cost(),
        )

    def format_for_assistant(self) -> CoverageDataForAssistant:
        """Flattened view of every selected source for the coverage assistant."""
        gaps = self.coverage_gaps()
        return build_assistant_data(
            cards=self._cards,
            plans=self._plans,
            policies=self._policies,
            categories_covered=[c for c in ALL_CATEGORIES if c not in gaps],
            categories_not_covered=gaps,
            total_annual_cost=self.total_annual_cost(),
        )


def create_query_engine(selection: CoverageSelection, catalog: Optional[CoverageCatalog] = None) -> CoverageQueryEngine:
    """Build an engine from a store snapshot."""
    return CoverageQueryEngine(
        card_ids=selection.selected_card_ids,
        plan_ids=selection.added_plan_ids,
        policies=selection.uploaded_policies,
        catalog=catalog,
    )


# =============================================================================
# Highlights and warnings
# =============================================================================

def _rental_type(card: CoverageSource) -> Optional[RentalCoverageType]:
    if card.card is None or card.card.rental is None:
        return None
    return card.card.rental.coverage_type


def _card_highlights(card: CoverageSource, category_id: CategoryId) -> Tuple[str, ...]:
    payload = card.card
    highlights = []
    if category_id == CategoryId.TRAVEL_RENTAL and payload.rental:
        highlights.append(f"{payload.rental.coverage_type.value} coverage up to {_money(payload.rental.max_coverage)}")
        highlights.append(f"Maximum {payload.rental.max_days} days")
    elif category_id == CategoryId.TRAVEL_TRIP and payload.trip_protection:
        highlights.append(f"Up to {_money(payload.trip_protection.cancellation_coverage)} cancellation")
    elif category_id == CategoryId.TRAVEL_PERKS and payload.travel_perks and payload.travel_perks.lounge_access:
        highlights.append(f"{len(payload.travel_perks.lounge_access)} lounge networks")
    return tuple(highlights)


def _category_highlights(category_id: CategoryId, sources: CategorySources) -> Tuple[str, ...]:
    if category_id == CategoryId.TRAVEL_RENTAL:
        primary = [c for c in sources.cards if _rental_type(c) == RentalCoverageType.PRIMARY]
        if primary:
            return (f"{len(primary)} card(s) with primary rental coverage",)
    return ()


def _category_warnings(category_id: CategoryId, sources: CategorySources) -> Tuple[str, ...]:
    if category_id == CategoryId.TRAVEL_RENTAL and sources.cards:
        if all(_rental_type(c) == RentalCoverageType.SECONDARY for c in sources.cards):
            return (SECONDARY_RENTAL_WARNING,)
    return ()
