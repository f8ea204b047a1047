"""
Benefit template library.
Reusable benefit definitions addressed by (kind, key), loaded once from the
JSON files under data/benefits/. Cards reference these keys instead of
repeating the same terms.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from engine.config import StoreConfig
from engine.errors import HydrationError
from engine.models import SourceMetadata, frozen_mapping

logger = logging.getLogger(__name__)


class TemplateKind(str, Enum):
    RENTAL_EXCLUSIONS = "rental_exclusions"
    TRIP_PROTECTION = "trip_protection"
    BAGGAGE_PROTECTION = "baggage_protection"
    PURCHASE_PROTECTION = "purchase_protection"
    EXTENDED_WARRANTY = "extended_warranty"
    CELL_PHONE_PROTECTION = "cell_phone_protection"
    ROADSIDE_ASSISTANCE = "roadside_assistance"
    EMERGENCY_ASSISTANCE = "emergency_assistance"
    RETURN_PROTECTION = "return_protection"
    TRAVEL_PERKS = "travel_perks"


def freeze_value(value: Any) -> Any:
    """Recursively turn lists into tuples and dicts into read-only mappings."""
    if isinstance(value, dict):
        return frozen_mapping({k: freeze_value(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_value(v) for v in value)
    return value


@dataclass(frozen=True)
class BenefitTemplate:
    """
    One shared benefit definition.

    `terms` holds the kind-specific fields (limits, covered reasons,
    exclusion lists ...) exactly as they appear in the data file, frozen.
    """
    kind: TemplateKind
    key: str
    name: str
    issuer: Optional[str] = None
    tier: Optional[str] = None
    terms: Mapping[str, Any] = field(default_factory=frozen_mapping)

    def get(self, name: str, default: Any = None) -> Any:
        return self.terms.get(name, default)


class BenefitTemplateLibrary:
    """Read-only lookup of benefit templates grouped by kind."""

    def __init__(
        self,
        templates: Mapping[TemplateKind, Mapping[str, BenefitTemplate]],
        metadata: Optional[Mapping[str, SourceMetadata]] = None,
    ):
        self._templates = {kind: dict(templates.get(kind, {})) for kind in TemplateKind}
        self.metadata = frozen_mapping(metadata)

    @classmethod
    def from_documents(cls, documents: Iterable[Dict[str, Any]]) -> "BenefitTemplateLibrary":
        """
        Build a library from parsed template documents.

        Each document looks like:
            {"template_type": "travel", "metadata": {...},
             "templates": {"<kind>": {"<key>": {...fields}}}}

        Raises:
            HydrationError: on an unknown kind or a template without a name
        """
        grouped: Dict[TemplateKind, Dict[str, BenefitTemplate]] = {kind: {} for kind in TemplateKind}
        metadata: Dict[str, SourceMetadata] = {}

        for document in documents:
            doc_type = document.get("template_type", "unknown")
            if document.get("metadata"):
                metadata[doc_type] = parse_metadata(document["metadata"])

            for kind_name, entries in document.get("templates", {}).items():
                try:
                    kind = TemplateKind(kind_name)
                except ValueError:
                    raise HydrationError(f"Unknown benefit template kind '{kind_name}' in {doc_type} templates")

                for key, raw in entries.items():
                    grouped[kind][key] = _build_template(kind, key, raw)

        return cls(grouped, metadata)

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "BenefitTemplateLibrary":
        """Load every *.json file under <data_dir>/benefits."""
        benefits_dir = Path(data_dir or StoreConfig.DATA_DIR) / "benefits"
        documents = [load_json(path) for path in sorted(benefits_dir.glob("*.json"))]
        library = cls.from_documents(documents)
        logger.info("Loaded %d benefit templates from %s", library.count(), benefits_dir)
        return library

    def get_template(self, kind: TemplateKind, key: str) -> Optional[BenefitTemplate]:
        """Return the template for (kind, key), or None when it does not exist."""
        return self._templates.get(TemplateKind(kind), {}).get(key)

    def available_keys(self, kind: TemplateKind) -> List[str]:
        return sorted(self._templates.get(TemplateKind(kind), {}))

    def templates_by_issuer(self, issuer: str) -> List[BenefitTemplate]:
        """All templates whose issuer matches (case-insensitive), in kind order."""
        wanted = issuer.lower()
        return [
            template
            for kind in TemplateKind
            for template in self._templates[kind].values()
            if template.issuer and template.issuer.lower() == wanted
        ]

    def count(self) -> int:
        return sum(len(entries) for entries in self._templates.values())


def parse_metadata(raw: Mapping[str, Any]) -> SourceMetadata:
    try:
        return SourceMetadata(
            last_updated=str(raw["last_updated"]),
            version=str(raw["version"]),
            source_url=raw.get("source_url"),
            notes=raw.get("notes"),
        )
    except KeyError as e:
        raise HydrationError(f"Metadata block is missing {e}")


def _build_template(kind: TemplateKind, key: str, raw: Mapping[str, Any]) -> BenefitTemplate:
    if not raw.get("name"):
        raise HydrationError(f"Benefit template {kind.value}/{key} has no name")

    terms = {k: v for k, v in raw.items() if k not in ("id", "name", "issuer", "tier")}
    return BenefitTemplate(
        kind=kind,
        key=key,
        name=raw["name"],
        issuer=raw.get("issuer"),
        tier=raw.get("tier"),
        terms=freeze_value(terms),
    )


def load_json(file_path: Path) -> Dict[str, Any]:
    """Load a static data file"""
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def get_template_library() -> BenefitTemplateLibrary:
    """Process-wide template library, built on first use."""
    return BenefitTemplateLibrary.load()
