"""
Hydrated catalog of every known card, plan and policy-type template.
Built once per process and shared read-only by every query engine.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from engine.errors import HydrationError
from engine.hydration import (
    hydrate_card_document,
    hydrate_plan_document,
    load_card_sources,
    load_plan_sources,
)
from engine.models import (
    CategoryId,
    CoverageSource,
    PlanType,
    PolicyType,
    RentalCoverageType,
    frozen_mapping,
)
from engine.policy_templates import PolicyTemplate, hydrate_policy_template, load_policy_templates
from engine.templates import BenefitTemplateLibrary

logger = logging.getLogger(__name__)


def _index_by_id(sources: Iterable[CoverageSource], label: str) -> Dict[str, CoverageSource]:
    indexed: Dict[str, CoverageSource] = {}
    for source in sources:
        if source.id in indexed:
            raise HydrationError(f"Duplicate {label} id '{source.id}'")
        indexed[source.id] = source
    return indexed


class CoverageCatalog:
    """
    Read-only catalog.

    Cards and plans keep their data file order, which is the order used
    whenever the catalog lists them.
    """

    def __init__(
        self,
        cards: Iterable[CoverageSource],
        plans: Iterable[CoverageSource],
        policy_templates: Optional[Mapping[PolicyType, PolicyTemplate]] = None,
    ):
        self._cards = _index_by_id(cards, "card")
        self._plans = _index_by_id(plans, "plan")
        self.policy_templates = frozen_mapping(policy_templates)

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "CoverageCatalog":
        library = BenefitTemplateLibrary.load(data_dir)
        catalog = cls(
            cards=load_card_sources(data_dir, library),
            plans=load_plan_sources(data_dir),
            policy_templates=load_policy_templates(data_dir),
        )
        logger.info(
            "Catalog ready: %d cards, %d plans, %d policy types",
            len(catalog._cards), len(catalog._plans), len(catalog.policy_templates),
        )
        return catalog

    @classmethod
    def from_records(
        cls,
        card_documents: Iterable[Mapping[str, Any]] = (),
        plan_documents: Iterable[Mapping[str, Any]] = (),
        policy_template_records: Iterable[Mapping[str, Any]] = (),
        library: Optional[BenefitTemplateLibrary] = None,
    ) -> "CoverageCatalog":
        """Build a catalog from in-memory documents shaped like the data files."""
        cards: List[CoverageSource] = []
        for document in card_documents:
            cards.extend(hydrate_card_document(document, library))
        plans: List[CoverageSource] = []
        for document in plan_documents:
            plans.extend(hydrate_plan_document(document))
        templates = {}
        for record in policy_template_records:
            template = hydrate_policy_template(record)
            templates[template.policy_type] = template
        return cls(cards, plans, templates)

    # Lookups
    @property
    def cards(self) -> List[CoverageSource]:
        return list(self._cards.values())

    @property
    def plans(self) -> List[CoverageSource]:
        return list(self._plans.values())

    def get_card(self, card_id: str) -> Optional[CoverageSource]:
        return self._cards.get(card_id)

    def get_plan(self, plan_id: str) -> Optional[CoverageSource]:
        return self._plans.get(plan_id)

    def get_source(self, source_id: str) -> Optional[CoverageSource]:
        return self._cards.get(source_id) or self._plans.get(source_id)

    def get_policy_template(self, policy_type: PolicyType) -> Optional[PolicyTemplate]:
        return self.policy_templates.get(PolicyType(policy_type))

    def cards_by_issuer(self, issuer: str) -> List[CoverageSource]:
        wanted = issuer.lower()
        return [c for c in self._cards.values() if c.provider.lower() == wanted]

    def cards_by_tier(self, tier: str) -> List[CoverageSource]:
        return [c for c in self._cards.values() if c.card.tier == tier]

    def cards_by_network(self, network: str) -> List[CoverageSource]:
        wanted = network.lower()
        return [c for c in self._cards.values() if c.card.network.lower() == wanted]

    def cards_for_category(self, category_id: CategoryId) -> List[CoverageSource]:
        return [c for c in self._cards.values() if c.covers(category_id)]

    def cards_with_primary_rental(self) -> List[CoverageSource]:
        return [
            c for c in self._cards.values()
            if c.card.rental is not None and c.card.rental.coverage_type == RentalCoverageType.PRIMARY
        ]

    def plans_by_provider(self, provider: str) -> List[CoverageSource]:
        wanted = provider.lower()
        return [p for p in self._plans.values() if p.provider.lower() == wanted]

    def plans_by_type(self, plan_type: PlanType) -> List[CoverageSource]:
        return [p for p in self._plans.values() if p.plan.plan_type == PlanType(plan_type)]

    def plans_for_category(self, category_id: CategoryId) -> List[CoverageSource]:
        return [p for p in self._plans.values() if p.covers(category_id)]

    def issuers(self) -> List[str]:
        seen: List[str] = []
        for card in self._cards.values():
            if card.provider not in seen:
                seen.append(card.provider)
        return seen


@lru_cache(maxsize=1)
def get_catalog() -> CoverageCatalog:
    """Process-wide catalog built from the bundled data directory."""
    return CoverageCatalog.load()
