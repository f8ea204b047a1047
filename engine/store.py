"""
Per-identity coverage store.

Holds the signed-in user's selection in memory and keeps a durable copy
under a key namespaced by the user id. The durable record is versioned:
a record written under any other schema version is discarded whole and
removed, never partially read.

State machine:
    UNINITIALIZED --signed in(U)--> LOADING(U) --> READY(U)
    READY(U) --identifier changed(V)--> flush U, LOADING(V) --> READY(V)
    READY(U) --signed out--> UNINITIALIZED (record kept, or removed on account deletion)

Writes run on a single background writer thread, so they are serialized
and never interleave. Identity events are queued and applied strictly in
arrival order; an event raised while another one is being applied waits
for it to finish.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from engine.catalog import CoverageCatalog, get_catalog
from engine.config import STORAGE_SCHEMA_VERSION, StoreConfig, is_identity_key, storage_key
from engine.errors import IdentityMismatchError, IdentityRequiredError
from engine.models import (
    BenefitDetails,
    CategoryId,
    CoverageLevel,
    CoverageSelection,
    CoverageSource,
    PolicyOrigin,
    PolicyPayload,
    PolicyType,
    SelectionCounts,
    SourceKind,
    SourceMetadata,
    frozen_mapping,
    frozen_strings,
)
from engine.queries import CoverageQueryEngine, create_query_engine
from engine.storage import DurableStorage, InMemoryStorage
from engine.templates import freeze_value

logger = logging.getLogger(__name__)


# =============================================================================
# Persisted record layout
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PersistedBenefit(_CamelModel):
    category_id: CategoryId
    coverage_level: CoverageLevel
    limits: Dict[str, Any] = Field(default_factory=dict)
    covered: List[str] = Field(default_factory=list)
    not_covered: List[str] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)
    claim_process: Optional[str] = None
    notes: List[str] = Field(default_factory=list)


class PersistedMetadata(_CamelModel):
    last_updated: str
    version: str
    source_url: Optional[str] = None
    notes: Optional[str] = None


class PersistedPolicy(_CamelModel):
    id: str
    name: str
    full_name: str
    provider: str
    categories: List[CategoryId]
    benefits: Dict[CategoryId, PersistedBenefit]
    metadata: PersistedMetadata
    policy_type: PolicyType
    uploaded_at: str
    origin: PolicyOrigin
    policy_number: Optional[str] = None
    carrier: Optional[str] = None
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None
    document_id: Optional[str] = None
    named_insured: Optional[str] = None
    coverages: Dict[str, Any] = Field(default_factory=dict)


class PlanRef(_CamelModel):
    id: str


class PersistedState(_CamelModel):
    user_id: str
    selected_cards: List[str] = Field(default_factory=list)
    uploaded_policies: List[PersistedPolicy] = Field(default_factory=list)
    added_plans: List[PlanRef] = Field(default_factory=list)
    last_updated: Optional[str] = None


class PersistedRecord(_CamelModel):
    state: PersistedState
    version: int


class _VersionProbe(BaseModel):
    """Reads only the version so stale layouts are recognized before full validation."""
    version: int

    model_config = ConfigDict(extra="ignore")


def _thaw(value: Any) -> Any:
    """Inverse of freeze_value: read-only mappings and tuples back to dicts and lists."""
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


def policy_to_persisted(policy: CoverageSource) -> PersistedPolicy:
    payload = policy.policy
    return PersistedPolicy(
        id=policy.id,
        name=policy.name,
        full_name=policy.full_name,
        provider=policy.provider,
        categories=list(policy.categories),
        benefits={
            category_id: PersistedBenefit(
                category_id=benefit.category_id,
                coverage_level=benefit.coverage_level,
                limits=_thaw(benefit.limits),
                covered=list(benefit.covered),
                not_covered=list(benefit.not_covered),
                conditions=list(benefit.conditions),
                claim_process=benefit.claim_process,
                notes=list(benefit.notes),
            )
            for category_id, benefit in policy.benefits.items()
        },
        metadata=PersistedMetadata(
            last_updated=policy.metadata.last_updated,
            version=policy.metadata.version,
            source_url=policy.metadata.source_url,
            notes=policy.metadata.notes,
        ),
        policy_type=payload.policy_type,
        uploaded_at=payload.uploaded_at,
        origin=payload.origin,
        policy_number=payload.policy_number,
        carrier=payload.carrier,
        effective_date=payload.effective_date,
        expiration_date=payload.expiration_date,
        document_id=payload.document_id,
        named_insured=payload.named_insured,
        coverages=_thaw(payload.coverages),
    )


def persisted_to_policy(persisted: PersistedPolicy) -> CoverageSource:
    """Rebuild a policy source; raises ValueError if the stored policy breaks a source invariant."""
    benefits = {
        category_id: BenefitDetails(
            category_id=benefit.category_id,
            coverage_level=benefit.coverage_level,
            limits=freeze_value(benefit.limits),
            covered=frozen_strings(benefit.covered),
            not_covered=frozen_strings(benefit.not_covered),
            conditions=frozen_strings(benefit.conditions),
            claim_process=benefit.claim_process,
            notes=frozen_strings(benefit.notes),
        )
        for category_id, benefit in persisted.benefits.items()
    }
    return CoverageSource(
        kind=SourceKind.POLICY,
        id=persisted.id,
        name=persisted.name,
        full_name=persisted.full_name,
        provider=persisted.provider,
        categories=tuple(persisted.categories),
        benefits=frozen_mapping(benefits),
        metadata=SourceMetadata(
            last_updated=persisted.metadata.last_updated,
            version=persisted.metadata.version,
            source_url=persisted.metadata.source_url,
            notes=persisted.metadata.notes,
        ),
        policy=PolicyPayload(
            policy_type=persisted.policy_type,
            uploaded_at=persisted.uploaded_at,
            origin=persisted.origin,
            policy_number=persisted.policy_number,
            carrier=persisted.carrier,
            effective_date=persisted.effective_date,
            expiration_date=persisted.expiration_date,
            document_id=persisted.document_id,
            named_insured=persisted.named_insured,
            coverages=freeze_value(persisted.coverages),
        ),
    )


def selection_to_record(selection: CoverageSelection) -> PersistedRecord:
    return PersistedRecord(
        state=PersistedState(
            user_id=selection.user_id,
            selected_cards=list(selection.selected_card_ids),
            uploaded_policies=[policy_to_persisted(p) for p in selection.uploaded_policies],
            added_plans=[PlanRef(id=plan_id) for plan_id in selection.added_plan_ids],
            last_updated=selection.last_updated,
        ),
        version=STORAGE_SCHEMA_VERSION,
    )


def record_to_selection(record: PersistedRecord) -> CoverageSelection:
    state = record.state
    return CoverageSelection(
        user_id=state.user_id,
        selected_card_ids=tuple(state.selected_cards),
        uploaded_policies=tuple(persisted_to_policy(p) for p in state.uploaded_policies),
        added_plan_ids=tuple(plan.id for plan in state.added_plans),
        last_updated=state.last_updated,
    )


def encode_selection(selection: CoverageSelection) -> str:
    return selection_to_record(selection).model_dump_json(by_alias=True)


def probe_version(raw: str) -> Optional[int]:
    """Schema version of a stored document, or None when it cannot be read."""
    try:
        return _VersionProbe.model_validate_json(raw).version
    except ValidationError:
        return None


def sweep_stale_records(storage: DurableStorage) -> List[str]:
    """
    Remove legacy unnamespaced keys and identity records whose schema
    version is not the current one (or that cannot be read at all).

    Returns:
        The keys that were removed
    """
    removed = []
    for key in storage.keys():
        if key in StoreConfig.LEGACY_KEYS:
            storage.remove_item(key)
            removed.append(key)
            continue
        if not is_identity_key(key):
            continue
        raw = storage.get_item(key)
        if raw is None:
            continue
        if probe_version(raw) != STORAGE_SCHEMA_VERSION:
            storage.remove_item(key)
            removed.append(key)

    if removed:
        logger.info("Swept %d stale coverage records: %s", len(removed), ", ".join(removed))
    return removed


# =============================================================================
# Identity events
# =============================================================================

class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"


class IdentityEventKind(str, Enum):
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    IDENTIFIER_CHANGED = "identifier_changed"


@dataclass(frozen=True)
class IdentityEvent:
    kind: IdentityEventKind
    user_id: Optional[str] = None
    previous_user_id: Optional[str] = None
    delete_account: bool = False

    @classmethod
    def signed_in(cls, user_id: str) -> "IdentityEvent":
        return cls(IdentityEventKind.SIGNED_IN, user_id=user_id)

    @classmethod
    def signed_out(cls, delete_account: bool = False) -> "IdentityEvent":
        return cls(IdentityEventKind.SIGNED_OUT, delete_account=delete_account)

    @classmethod
    def identifier_changed(cls, previous_user_id: Optional[str], user_id: Optional[str]) -> "IdentityEvent":
        return cls(IdentityEventKind.IDENTIFIER_CHANGED, user_id=user_id, previous_user_id=previous_user_id)


@dataclass
class _QueuedEvent:
    event: IdentityEvent
    done: threading.Event = field(default_factory=threading.Event)
    error: Optional[Exception] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Store
# =============================================================================

class CoverageStore:
    """
    Owner of the current selection.

    Args:
        storage: durable key/value storage (defaults to in-memory)
        catalog: catalog used to validate plan ids and build query engines
        sweep_on_start: run the stale record sweep on construction
    """

    def __init__(
        self,
        storage: Optional[DurableStorage] = None,
        catalog: Optional[CoverageCatalog] = None,
        sweep_on_start: bool = True,
    ):
        self.storage = storage if storage is not None else InMemoryStorage()
        self._catalog = catalog

        self._lock = threading.RLock()
        self._state = StoreState.UNINITIALIZED
        self._user_id: Optional[str] = None
        self._selection: Optional[CoverageSelection] = None

        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="coverage-store-writer")
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()

        self._events: Deque[_QueuedEvent] = deque()
        self._events_lock = threading.Lock()
        self._dispatcher: Optional[int] = None

        if sweep_on_start:
            try:
                sweep_stale_records(self.storage)
            except Exception as e:
                logger.warning("Stale record sweep failed: %s", e)

    # Context manager support
    def __enter__(self) -> "CoverageStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def catalog(self) -> CoverageCatalog:
        if self._catalog is None:
            self._catalog = get_catalog()
        return self._catalog

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def selection(self) -> Optional[CoverageSelection]:
        """Snapshot of the current selection (None unless READY)."""
        with self._lock:
            return self._selection if self._state == StoreState.READY else None

    # =========================================================================
    # Background writer
    # =========================================================================

    def _submit(self, operation: Callable[..., None], key: str, *args: Any) -> Future:
        def run() -> None:
            try:
                operation(key, *args)
            except Exception:
                logger.exception("Durable storage operation on '%s' failed", key)
                raise

        future = self._writer.submit(run)
        with self._pending_lock:
            self._pending.append(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            if future in self._pending:
                self._pending.remove(future)

    def flush(self, timeout: Optional[float] = None) -> None:
        """
        Block until every scheduled write has been issued to storage.

        Raises:
            TimeoutError: if writes are still outstanding after the timeout
        """
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return
        timeout = StoreConfig.FLUSH_TIMEOUT_SECONDS if timeout is None else timeout
        _, not_done = wait(pending, timeout=timeout)
        if not_done:
            raise TimeoutError(f"{len(not_done)} coverage store writes still pending after {timeout}s")

    def close(self) -> None:
        self.flush()
        self._writer.shutdown(wait=True)

    def _schedule_write(self, selection: CoverageSelection) -> None:
        self._submit(self.storage.set_item, storage_key(selection.user_id), encode_selection(selection))

    def _remove_now(self, key: str) -> None:
        """Remove a key through the writer, after any writes already queued for it."""
        self._submit(self.storage.remove_item, key)
        self.flush()

    # =========================================================================
    # Identity events
    # =========================================================================

    def handle_event(self, event: IdentityEvent) -> None:
        """
        Queue an identity event and apply queued events in order.

        If another thread is applying events, the call blocks until this
        event has been applied. A nested call made while an event is being
        applied on the same thread only queues the event; it is applied
        once the current one resolves.

        A failed event does not stop the queue: later events are still
        applied, and the error is raised to the caller that queued the
        failed event.
        """
        queued = _QueuedEvent(event)
        thread_id = threading.get_ident()
        with self._events_lock:
            self._events.append(queued)
            if self._dispatcher is None:
                self._dispatcher = thread_id
                dispatch = True
            else:
                dispatch = False
                nested = self._dispatcher == thread_id

        if dispatch:
            self._drain_events()
        elif nested:
            return
        else:
            queued.done.wait()

        if queued.error is not None:
            raise queued.error

    def _drain_events(self) -> None:
        try:
            while True:
                with self._events_lock:
                    if not self._events:
                        self._dispatcher = None
                        return
                    queued = self._events.popleft()
                try:
                    self._apply(queued.event)
                except Exception as e:
                    logger.warning("Identity event %s failed: %s", queued.event.kind.value, e)
                    queued.error = e
                finally:
                    queued.done.set()
        except BaseException:
            with self._events_lock:
                self._dispatcher = None
            raise

    def sign_in(self, user_id: str) -> None:
        self.handle_event(IdentityEvent.signed_in(user_id))

    def sign_out(self, delete_account: bool = False) -> None:
        self.handle_event(IdentityEvent.signed_out(delete_account))

    def change_identifier(self, previous_user_id: Optional[str], user_id: Optional[str]) -> None:
        self.handle_event(IdentityEvent.identifier_changed(previous_user_id, user_id))

    def delete_account(self) -> None:
        """Sign out and permanently remove the current user's durable record."""
        self.sign_out(delete_account=True)

    def _apply(self, event: IdentityEvent) -> None:
        if event.kind == IdentityEventKind.SIGNED_OUT:
            self._unload(remove_record=event.delete_account)
            return

        if not event.user_id:
            # Identifier changed to nothing is a sign-out
            self._unload(remove_record=False)
            return

        if self._state == StoreState.READY and self._user_id == event.user_id:
            return
        self._load(event.user_id)

    def _load(self, user_id: str) -> None:
        with self._lock:
            previous = self._user_id
            self._state = StoreState.LOADING
            self._user_id = user_id
            self._selection = None

        # Writes for the outgoing identity must land before the incoming read
        self.flush()
        if previous and previous != user_id:
            logger.info("Switching coverage store from '%s' to '%s'", previous, user_id)

        key = storage_key(user_id)
        try:
            selection = self._read_record(user_id, key)
        except IdentityMismatchError:
            with self._lock:
                self._state = StoreState.UNINITIALIZED
                self._user_id = None
            raise

        with self._lock:
            self._selection = selection or CoverageSelection.empty(user_id)
            self._state = StoreState.READY
        logger.info("Coverage store ready for '%s' (%s)", user_id, "restored" if selection else "empty")

    def _read_record(self, user_id: str, key: str) -> Optional[CoverageSelection]:
        """Stored selection for the identity, or None; stale or unreadable records are purged."""
        raw = self.storage.get_item(key)
        if raw is None:
            return None

        version = probe_version(raw)
        if version != STORAGE_SCHEMA_VERSION:
            logger.warning(
                "Discarding coverage record '%s' with schema version %s (expected %s)",
                key, version, STORAGE_SCHEMA_VERSION,
            )
            self._remove_now(key)
            return None

        try:
            record = PersistedRecord.model_validate_json(raw)
            selection = record_to_selection(record)
        except ValueError as e:
            logger.warning("Discarding unreadable coverage record '%s': %s", key, e)
            self._remove_now(key)
            return None

        if selection.user_id != user_id:
            raise IdentityMismatchError(
                f"Record under '{key}' belongs to '{selection.user_id}', not '{user_id}'"
            )
        return selection

    def _unload(self, remove_record: bool) -> None:
        self.flush()
        with self._lock:
            user_id = self._user_id
            self._state = StoreState.UNINITIALIZED
            self._user_id = None
            self._selection = None

        if user_id and remove_record:
            self._remove_now(storage_key(user_id))
            logger.info("Removed coverage record for deleted account '%s'", user_id)
        elif user_id:
            logger.info("Signed out '%s'; coverage record kept", user_id)

    # =========================================================================
    # Mutations
    # =========================================================================

    def _require_ready(self) -> CoverageSelection:
        if self._state != StoreState.READY or self._selection is None:
            raise IdentityRequiredError("No signed-in user; sign in before changing the selection")
        return self._selection

    def _commit(self, selection: CoverageSelection) -> CoverageSelection:
        selection = replace(selection, last_updated=_now())
        self._selection = selection
        self._schedule_write(selection)
        return selection

    def toggle_card(self, card_id: str) -> bool:
        """
        Select the card if unselected, unselect it otherwise.

        Returns:
            True if the card is selected after the call
        """
        with self._lock:
            selection = self._require_ready()
            card_ids = list(selection.selected_card_ids)
            selected = card_id not in card_ids
            if selected:
                card_ids.append(card_id)
            else:
                card_ids.remove(card_id)
            self._commit(replace(selection, selected_card_ids=tuple(card_ids)))
            return selected

    def remove_card(self, card_id: str) -> bool:
        """Unselect a card; returns False if it was not selected."""
        with self._lock:
            selection = self._require_ready()
            if card_id not in selection.selected_card_ids:
                return False
            remaining = tuple(c for c in selection.selected_card_ids if c != card_id)
            self._commit(replace(selection, selected_card_ids=remaining))
            return True

    def add_plan(self, plan_id: str) -> bool:
        """Add a catalog plan; unknown and already-added plans are ignored."""
        with self._lock:
            selection = self._require_ready()
            if plan_id in selection.added_plan_ids:
                return False
            if self.catalog.get_plan(plan_id) is None:
                logger.warning("Ignoring unknown protection plan '%s'", plan_id)
                return False
            self._commit(replace(selection, added_plan_ids=selection.added_plan_ids + (plan_id,)))
            return True

    def remove_plan(self, plan_id: str) -> bool:
        with self._lock:
            selection = self._require_ready()
            if plan_id not in selection.added_plan_ids:
                return False
            remaining = tuple(p for p in selection.added_plan_ids if p != plan_id)
            self._commit(replace(selection, added_plan_ids=remaining))
            return True

    def add_policy(self, policy: CoverageSource) -> bool:
        """
        Add a validated policy source; a policy with an existing id is ignored.

        Raises:
            ValueError: if the source is not a policy
        """
        if policy.kind != SourceKind.POLICY:
            raise ValueError(f"Only policy sources can be uploaded, got {policy.kind.value}")
        with self._lock:
            selection = self._require_ready()
            if any(p.id == policy.id for p in selection.uploaded_policies):
                return False
            self._commit(replace(selection, uploaded_policies=selection.uploaded_policies + (policy,)))
            return True

    def remove_policy(self, policy_id: str) -> bool:
        with self._lock:
            selection = self._require_ready()
            remaining = tuple(p for p in selection.uploaded_policies if p.id != policy_id)
            if len(remaining) == len(selection.uploaded_policies):
                return False
            self._commit(replace(selection, uploaded_policies=remaining))
            return True

    # =========================================================================
    # Reads
    # =========================================================================

    def selection_counts(self) -> SelectionCounts:
        selection = self.selection
        if selection is None:
            return SelectionCounts(cards=0, plans=0, policies=0)
        return SelectionCounts(
            cards=len(selection.selected_card_ids),
            plans=len(selection.added_plan_ids),
            policies=len(selection.uploaded_policies),
        )

    def query_engine(self) -> CoverageQueryEngine:
        """Fresh query engine over the current selection."""
        selection = self._require_ready()
        return create_query_engine(selection, self.catalog)
