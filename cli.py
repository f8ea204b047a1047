"""
Command-line interface for the Coverage Aggregation Engine.
Every user-scoped command signs the user in, applies the command, flushes
the store and signs out again.
"""

import argparse
import json
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from engine.catalog import CoverageCatalog, get_catalog
from engine.config import StoreConfig
from engine.errors import CoverageError, InvalidPolicyError
from engine.models import ALL_CATEGORIES, CategoryId, CoverageSource, PolicyType
from engine.policy_templates import ParsedPolicyData, all_policy_fields, create_policy_source
from engine.storage import JsonFileStorage
from engine.store import CoverageStore, sweep_stale_records


def _money(amount: float) -> str:
    return f"${amount:,.2f}"


def parse_coverage_value(raw: str) -> Any:
    """Interpret a --coverage value as bool, int, float or plain text."""
    lowered = raw.strip().lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def parse_category(value: str) -> CategoryId:
    try:
        return CategoryId(value)
    except ValueError:
        valid = ", ".join(c.value for c in ALL_CATEGORIES)
        print(f"Error: Invalid category '{value}'. Must be one of: {valid}")
        sys.exit(1)


def open_storage(args):
    """Build the durable storage selected by --backend."""
    if args.backend == "sql":
        from app.db.db import DATABASE_URL, init_db, make_engine
        from app.services.record_storage import SqlRecordStorage

        url = args.database_url or DATABASE_URL
        if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        engine = make_engine(url)
        init_db(engine)
        return SqlRecordStorage(sessionmaker(autocommit=False, autoflush=False, bind=engine))

    return JsonFileStorage(Path(args.store_file) if args.store_file else StoreConfig.STORE_FILE)


@contextmanager
def user_session(args, catalog: CoverageCatalog):
    """Signed-in store for --user; flushed and signed out on exit."""
    if not args.user:
        print("Error: --user is required for this command")
        sys.exit(1)

    store = CoverageStore(open_storage(args), catalog)
    try:
        store.sign_in(args.user)
        yield store
    finally:
        store.sign_out()
        store.close()


def _describe_source(source: CoverageSource) -> str:
    return f"{source.display_name} [{source.id}]"


# =============================================================================
# Catalog-only commands
# =============================================================================

def cmd_catalog(args, catalog: CoverageCatalog):
    """
    List the cards and protection plans available for selection.

    Args:
        args: Parsed command-line arguments with fields:
            - issuer: optional issuer/provider filter
            - category: optional category filter
    """
    cards = catalog.cards_by_issuer(args.issuer) if args.issuer else catalog.cards
    plans = catalog.plans_by_provider(args.issuer) if args.issuer else catalog.plans
    if args.category:
        category_id = parse_category(args.category)
        cards = [c for c in cards if c.covers(category_id)]
        plans = [p for p in plans if p.covers(category_id)]

    print("\n=== Credit Cards ===\n")
    if not cards:
        print("  (No cards match)")
    for card in cards:
        rental = card.card.rental
        rental_str = f", {rental.coverage_type.value} rental" if rental else ""
        print(f"  {card.id}: {card.display_name} ({_money(card.card.annual_fee)}/yr{rental_str})")

    print("\n=== Protection Plans ===\n")
    if not plans:
        print("  (No plans match)")
    for plan in plans:
        print(f"  {plan.id}: {plan.display_name} ({plan.plan.cost.describe()})")

    print("\n=== Policy Types ===\n")
    for policy_type, template in catalog.policy_templates.items():
        categories = ", ".join(c.value for c in template.categories)
        print(f"  {policy_type.value}: {template.display_name} -> {categories}")
    print()


def cmd_sweep(args, catalog: CoverageCatalog):
    """Remove stale-version and legacy records from durable storage."""
    removed = sweep_stale_records(open_storage(args))
    if not removed:
        print("No stale records found.")
        return
    print(f"Removed {len(removed)} stale record(s):")
    for key in removed:
        print(f"  {key}")


# =============================================================================
# Selection commands
# =============================================================================

def cmd_toggle_card(args, store: CoverageStore):
    card = store.catalog.get_card(args.card_id)
    if card is None:
        print(f"Error: Unknown card '{args.card_id}'. Run 'catalog' to list card ids.")
        sys.exit(1)
    selected = store.toggle_card(args.card_id)
    print(f"{'Selected' if selected else 'Removed'} card: {card.display_name}")


def cmd_add_plan(args, store: CoverageStore):
    plan = store.catalog.get_plan(args.plan_id)
    if plan is None:
        print(f"Error: Unknown plan '{args.plan_id}'. Run 'catalog' to list plan ids.")
        sys.exit(1)
    if store.add_plan(args.plan_id):
        print(f"Added plan: {plan.display_name}")
    else:
        print(f"Plan already added: {plan.display_name}")


def cmd_remove_plan(args, store: CoverageStore):
    if store.remove_plan(args.plan_id):
        print(f"Removed plan: {args.plan_id}")
    else:
        print(f"Plan not in selection: {args.plan_id}")


def _parsed_policy_from_args(args) -> ParsedPolicyData:
    data: Dict[str, Any] = {}
    if args.file:
        try:
            with open(args.file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error: Could not read policy file '{args.file}': {e}")
            sys.exit(1)

    coverages = dict(data.get("coverages") or {})
    for item in args.coverage or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            print(f"Error: Invalid coverage '{item}'. Expected FIELD=VALUE.")
            sys.exit(1)
        coverages[name.strip()] = parse_coverage_value(value)
    data["coverages"] = coverages

    for name in ("carrier", "policy_number", "effective_date", "expiration_date", "named_insured"):
        value = getattr(args, name)
        if value:
            data[name] = value
    return ParsedPolicyData.model_validate(data)


def cmd_add_policy(args, store: CoverageStore):
    """
    Validate extracted policy data and add it to the selection.

    Args:
        args: Parsed command-line arguments with fields:
            - type: auto | home | renters | umbrella
            - coverage: repeated FIELD=VALUE coverage values
            - file: optional JSON file with parsed policy data
            - carrier, policy_number, effective_date, expiration_date, named_insured
            - document_id: originating uploaded document (optional)
    """
    parsed = _parsed_policy_from_args(args)
    try:
        policy = create_policy_source(
            args.type,
            parsed,
            document_id=args.document_id,
            templates=store.catalog.policy_templates,
        )
    except InvalidPolicyError as e:
        template = store.catalog.get_policy_template(PolicyType(args.type))
        print(f"Error: {e}")
        print(f"  Known fields for {args.type}: {', '.join(all_policy_fields(template))}")
        sys.exit(1)

    store.add_policy(policy)
    print(f"Added policy: {policy.display_name} [{policy.id}]")
    print(f"  Categories: {', '.join(c.value for c in policy.categories)}")


def cmd_remove_policy(args, store: CoverageStore):
    if store.remove_policy(args.policy_id):
        print(f"Removed policy: {args.policy_id}")
    else:
        print(f"Policy not in selection: {args.policy_id}")


def cmd_delete_account(args, store: CoverageStore):
    user_id = store.user_id
    store.delete_account()
    print(f"Deleted stored coverage for '{user_id}'.")


# =============================================================================
# Query commands
# =============================================================================

def cmd_status(args, store: CoverageStore):
    """Show selection counts and the coverage status of each category."""
    counts = store.selection_counts()
    engine = store.query_engine()

    print(f"\n=== Coverage for {store.user_id} ===\n")
    print(f"Cards: {counts.cards}  Plans: {counts.plans}  Policies: {counts.policies}  Total: {counts.total}")

    categories = [parse_category(args.category)] if args.category else list(ALL_CATEGORIES)
    print()
    for category_id in categories:
        status = engine.coverage_status(category_id)
        sources = engine.sources_for_category(category_id).all()
        names = ", ".join(s.name for s in sources) or "-"
        print(f"  {category_id.value:<22} {status.value:<8} {names}")
    print()


def cmd_gaps(args, store: CoverageStore):
    gaps = store.query_engine().coverage_gaps()
    if not gaps:
        print("No coverage gaps.")
        return
    print("Categories with no coverage:")
    for category_id in gaps:
        print(f"  {category_id.value}")


def cmd_best(args, store: CoverageStore):
    category_id = parse_category(args.category)
    best = store.query_engine().best_source_for_category(category_id)
    if best is None:
        print(f"No selected source covers {category_id.value}.")
        return
    print(f"Best source for {category_id.value}: {_describe_source(best)}")


def cmd_compare(args, store: CoverageStore):
    categories = [parse_category(c) for c in args.category] if args.category else None
    matrix = store.query_engine().compare_sources(args.source_ids, categories)
    if not matrix.source_ids:
        print("Error: None of the given source ids are known.")
        sys.exit(1)

    print("\n=== Comparison ===\n")
    for source_id in matrix.source_ids:
        print(f"{source_id}:")
        for category_id in matrix.categories:
            cell = matrix.cell(source_id, category_id)
            if not cell.has_category:
                continue
            limit_str = f" key limit {_money(cell.key_limit)}" if cell.key_limit is not None else ""
            print(f"  {category_id.value:<22} {cell.coverage_level.value}{limit_str}")
            for highlight in cell.highlights:
                print(f"    • {highlight}")
        print()


def cmd_summary(args, store: CoverageStore):
    aggregated = store.query_engine().aggregated_coverage()

    print(f"\n=== Coverage Summary for {store.user_id} ===\n")
    print(f"Sources: {len(aggregated.sources)}")
    print(f"Estimated annual cost: {_money(aggregated.total_annual_cost)}")
    print()
    for category_id, info in aggregated.categories.items():
        best = f" (best: {info.best_source.name})" if info.best_source else ""
        print(f"  {category_id.value:<22} {info.status.value}{best}")
        for highlight in info.highlights:
            print(f"    • {highlight}")
        for warning in info.warnings:
            print(f"    ! {warning}")
    if aggregated.gaps:
        print(f"\nGaps: {', '.join(c.value for c in aggregated.gaps)}")
    print()


def cmd_assistant(args, store: CoverageStore):
    payload = store.query_engine().format_for_assistant().to_payload()
    print(json.dumps(payload, indent=2))


CATALOG_COMMANDS = {
    "catalog": cmd_catalog,
    "sweep": cmd_sweep,
}

USER_COMMANDS = {
    "toggle-card": cmd_toggle_card,
    "add-plan": cmd_add_plan,
    "remove-plan": cmd_remove_plan,
    "add-policy": cmd_add_policy,
    "remove-policy": cmd_remove_policy,
    "delete-account": cmd_delete_account,
    "status": cmd_status,
    "gaps": cmd_gaps,
    "best": cmd_best,
    "compare": cmd_compare,
    "summary": cmd_summary,
    "assistant": cmd_assistant,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Coverage Aggregation Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--user", help="User id whose selection to use")
    parser.add_argument("--backend", choices=["json", "sql"], default="json", help="Durable storage backend")
    parser.add_argument("--store-file", help="JSON store file (json backend)")
    parser.add_argument("--database-url", help="SQLAlchemy URL (sql backend)")
    parser.add_argument("--verbose", action="store_true", help="Enable info logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parser_catalog = subparsers.add_parser("catalog", help="List available cards, plans and policy types")
    parser_catalog.add_argument("--issuer", help="Filter by issuer or provider")
    parser_catalog.add_argument("--category", help="Filter by category id")

    subparsers.add_parser("sweep", help="Remove stale and legacy stored records")

    parser_toggle = subparsers.add_parser("toggle-card", help="Select or unselect a card")
    parser_toggle.add_argument("card_id", help="Card id from the catalog")

    parser_add_plan = subparsers.add_parser("add-plan", help="Add a protection plan")
    parser_add_plan.add_argument("plan_id", help="Plan id from the catalog")

    parser_remove_plan = subparsers.add_parser("remove-plan", help="Remove a protection plan")
    parser_remove_plan.add_argument("plan_id")

    parser_add_policy = subparsers.add_parser("add-policy", help="Validate and add an insurance policy")
    parser_add_policy.add_argument("--type", required=True, choices=[t.value for t in PolicyType], help="Policy type")
    parser_add_policy.add_argument("--coverage", action="append", metavar="FIELD=VALUE", help="Extracted coverage value (repeatable)")
    parser_add_policy.add_argument("--file", help="JSON file with parsed policy data")
    parser_add_policy.add_argument("--carrier")
    parser_add_policy.add_argument("--policy-number", dest="policy_number")
    parser_add_policy.add_argument("--effective-date", dest="effective_date")
    parser_add_policy.add_argument("--expiration-date", dest="expiration_date")
    parser_add_policy.add_argument("--named-insured", dest="named_insured")
    parser_add_policy.add_argument("--document-id", dest="document_id", help="Originating uploaded document id")

    parser_remove_policy = subparsers.add_parser("remove-policy", help="Remove an uploaded policy")
    parser_remove_policy.add_argument("policy_id")

    subparsers.add_parser("delete-account", help="Delete the user's stored coverage")

    parser_status = subparsers.add_parser("status", help="Show coverage status by category")
    parser_status.add_argument("--category", help="Only this category")

    subparsers.add_parser("gaps", help="List uncovered categories")

    parser_best = subparsers.add_parser("best", help="Best selected source for a category")
    parser_best.add_argument("category", help="Category id")

    parser_compare = subparsers.add_parser("compare", help="Compare sources side by side")
    parser_compare.add_argument("source_ids", nargs="+", help="Card, plan or policy ids")
    parser_compare.add_argument("--category", action="append", help="Limit to category (repeatable)")

    subparsers.add_parser("summary", help="Aggregated coverage and annual cost")
    subparsers.add_parser("assistant", help="Print the assistant projection as JSON")

    return parser


def main(argv: Optional[List[str]] = None, catalog: Optional[CoverageCatalog] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    catalog = catalog or get_catalog()
    try:
        if args.command in CATALOG_COMMANDS:
            CATALOG_COMMANDS[args.command](args, catalog)
            return
        with user_session(args, catalog) as store:
            USER_COMMANDS[args.command](args, store)
    except (CoverageError, TimeoutError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
