"""
Tests for engine/store.py
Per-identity persistence, schema version handling and identity events.
"""

import json
import threading

import pytest

from engine.config import STORAGE_SCHEMA_VERSION, StoreConfig, storage_key
from engine.errors import IdentityMismatchError, IdentityRequiredError
from engine.models import CoverageSelection
from engine.policy_templates import create_policy_source
from engine.storage import InMemoryStorage, JsonFileStorage
from engine.store import (
    CoverageStore,
    IdentityEvent,
    StoreState,
    encode_selection,
    probe_version,
    sweep_stale_records,
)


class RecordingStorage(InMemoryStorage):
    """In-memory storage that logs every operation in order"""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.operations = []

    def get_item(self, key):
        self.operations.append(("get", key))
        return super().get_item(key)

    def set_item(self, key, value):
        self.operations.append(("set", key))
        super().set_item(key, value)

    def remove_item(self, key):
        self.operations.append(("remove", key))
        super().remove_item(key)


class BlockingStorage(InMemoryStorage):
    """Storage whose writes wait until released"""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def set_item(self, key, value):
        self.release.wait(timeout=5)
        super().set_item(key, value)


@pytest.fixture
def policy(catalog):
    return create_policy_source(
        "home",
        {
            "carrier": "State Farm",
            "policy_number": "HO-123",
            "coverages": {
                "dwelling_coverage": 350000,
                "personal_property_coverage": 175000,
                "liability_coverage": 300000,
                "deductible": 1000,
            },
        },
        document_id="doc-1",
        policy_id="policy-home",
        uploaded_at="2025-02-01T09:30:00+00:00",
        templates=catalog.policy_templates,
    )


def _stored(storage, user_id):
    raw = storage.get_item(storage_key(user_id))
    return json.loads(raw) if raw is not None else None


class TestStateMachine:
    """Tests for the UNINITIALIZED -> LOADING -> READY lifecycle"""

    def test_starts_uninitialized(self, store):
        assert store.state == StoreState.UNINITIALIZED
        assert store.user_id is None
        assert store.selection is None

    def test_sign_in_new_user_is_ready_and_empty(self, store):
        # Act:
        store.sign_in("u1")

        # Assert:
        assert store.state == StoreState.READY
        assert store.selection == CoverageSelection.empty("u1")
        assert store.selection_counts().total == 0

    def test_mutation_without_identity_rejected(self, store):
        """Test selection changes require a signed-in user"""
        with pytest.raises(IdentityRequiredError):
            store.toggle_card("card-a")
        with pytest.raises(IdentityRequiredError):
            store.add_plan("plan-monthly")
        with pytest.raises(IdentityRequiredError):
            store.query_engine()

    def test_sign_out_resets_state(self, store):
        # Arrange:
        store.sign_in("u1")

        # Act:
        store.sign_out()

        # Assert:
        assert store.state == StoreState.UNINITIALIZED
        assert store.selection is None
        assert store.selection_counts().total == 0

    def test_repeated_sign_in_keeps_selection(self, store):
        store.sign_in("u1")
        store.toggle_card("card-a")

        store.sign_in("u1")

        assert store.selection.selected_card_ids == ("card-a",)


class TestMutations:
    """Tests for selection mutations"""

    def test_toggle_card(self, store):
        # Arrange:
        store.sign_in("u1")

        # Act & Assert:
        assert store.toggle_card("card-a") is True
        assert store.toggle_card("card-b") is True
        assert store.selection.selected_card_ids == ("card-a", "card-b")
        assert store.toggle_card("card-a") is False
        assert store.selection.selected_card_ids == ("card-b",)

    def test_remove_card(self, store):
        # Arrange:
        store.sign_in("u1")
        store.toggle_card("card-a")
        store.toggle_card("card-b")

        # Act & Assert:
        assert store.remove_card("card-a") is True
        assert store.remove_card("card-a") is False
        assert store.selection.selected_card_ids == ("card-b",)

    def test_mutation_sets_last_updated(self, store):
        store.sign_in("u1")
        assert store.selection.last_updated is None

        store.toggle_card("card-a")

        assert store.selection.last_updated is not None

    def test_add_and_remove_plan(self, store):
        # Arrange:
        store.sign_in("u1")

        # Act & Assert:
        assert store.add_plan("plan-monthly") is True
        assert store.add_plan("plan-monthly") is False
        assert store.add_plan("no-such-plan") is False
        assert store.selection.added_plan_ids == ("plan-monthly",)
        assert store.remove_plan("plan-monthly") is True
        assert store.remove_plan("plan-monthly") is False
        assert store.selection.added_plan_ids == ()

    def test_add_and_remove_policy(self, store, policy):
        # Arrange:
        store.sign_in("u1")

        # Act & Assert:
        assert store.add_policy(policy) is True
        assert store.add_policy(policy) is False
        assert store.selection_counts().policies == 1
        assert store.remove_policy("policy-home") is True
        assert store.remove_policy("policy-home") is False
        assert store.selection.uploaded_policies == ()

    def test_only_policies_uploaded(self, store, catalog):
        store.sign_in("u1")

        with pytest.raises(ValueError):
            store.add_policy(catalog.get_card("card-a"))

    def test_selection_counts(self, store, policy):
        store.sign_in("u1")
        store.toggle_card("card-a")
        store.toggle_card("card-c")
        store.add_plan("plan-yearly")
        store.add_policy(policy)

        counts = store.selection_counts()

        assert (counts.cards, counts.plans, counts.policies, counts.total) == (2, 1, 1, 4)


class TestPersistence:
    """Tests for the durable copy of the selection"""

    def test_round_trip(self, storage, catalog, policy):
        """Test a selection written by one store is restored by the next"""
        # Arrange:
        with CoverageStore(storage, catalog) as first:
            first.sign_in("u1")
            first.toggle_card("card-a")
            first.toggle_card("card-c")
            first.add_plan("plan-monthly")
            first.add_policy(policy)
            expected = first.selection
            first.sign_out()

        # Act:
        with CoverageStore(storage, catalog) as second:
            second.sign_in("u1")
            restored = second.selection

        # Assert:
        assert restored == expected
        assert restored.uploaded_policies[0].policy.coverages["dwelling_coverage"] == 350000

    def test_record_layout(self, store, storage):
        """Test the stored document carries the camelCase state and the schema version"""
        # Act:
        store.sign_in("u1")
        store.toggle_card("card-a")
        store.add_plan("plan-yearly")
        store.flush()

        # Assert:
        record = _stored(storage, "u1")
        assert record["version"] == STORAGE_SCHEMA_VERSION
        assert record["state"]["userId"] == "u1"
        assert record["state"]["selectedCards"] == ["card-a"]
        assert record["state"]["addedPlans"] == [{"id": "plan-yearly"}]
        assert record["state"]["uploadedPolicies"] == []

    def test_records_namespaced_per_identity(self, store, storage):
        store.sign_in("u1")
        store.toggle_card("card-a")
        store.sign_in("u2")
        store.toggle_card("card-b")
        store.flush()

        assert _stored(storage, "u1")["state"]["selectedCards"] == ["card-a"]
        assert _stored(storage, "u2")["state"]["selectedCards"] == ["card-b"]

    def test_stale_version_discarded_and_purged(self, catalog):
        """Test a record from another schema version yields an empty selection and is removed"""
        # Arrange:
        stale = json.dumps({"state": {"userId": "u1", "selectedCards": ["card-a"]}, "version": STORAGE_SCHEMA_VERSION - 1})
        storage = InMemoryStorage({storage_key("u1"): stale})

        # Act:
        with CoverageStore(storage, catalog, sweep_on_start=False) as store:
            store.sign_in("u1")
            selection = store.selection

            # Assert:
            assert selection == CoverageSelection.empty("u1")
            assert storage.get_item(storage_key("u1")) is None

    def test_unreadable_record_discarded(self, catalog):
        storage = InMemoryStorage({storage_key("u1"): "{not json"})

        with CoverageStore(storage, catalog, sweep_on_start=False) as store:
            store.sign_in("u1")

            assert store.selection == CoverageSelection.empty("u1")
            assert storage.get_item(storage_key("u1")) is None

    def test_invalid_state_discarded(self, catalog):
        """Test a current-version record with a broken state is purged, not partly read"""
        # Arrange:
        broken = json.dumps({"state": {"selectedCards": "card-a"}, "version": STORAGE_SCHEMA_VERSION})
        storage = InMemoryStorage({storage_key("u1"): broken})

        # Act:
        with CoverageStore(storage, catalog, sweep_on_start=False) as store:
            store.sign_in("u1")

            # Assert:
            assert store.selection.selected_card_ids == ()
            assert storage.get_item(storage_key("u1")) is None

    def test_identity_mismatch(self, catalog):
        """Test a record naming another user is refused"""
        # Arrange:
        foreign = encode_selection(CoverageSelection(user_id="u2", selected_card_ids=("card-a",)))
        storage = InMemoryStorage({storage_key("u1"): foreign})

        # Act & Assert:
        with CoverageStore(storage, catalog) as store:
            with pytest.raises(IdentityMismatchError):
                store.sign_in("u1")
            assert store.state == StoreState.UNINITIALIZED

            store.sign_in("u2")
            assert store.state == StoreState.READY

    def test_unknown_catalog_ids_survive_storage(self, store, storage, catalog):
        """Test ids no longer in the catalog stay stored but are ignored by queries"""
        # Arrange:
        store.sign_in("u1")
        store.toggle_card("retired-card")
        store.toggle_card("card-a")

        # Act:
        engine = store.query_engine()

        # Assert:
        assert store.selection.selected_card_ids == ("retired-card", "card-a")
        assert [c.id for c in engine.credit_cards] == ["card-a"]


class TestIdentityTransitions:
    """Tests for sign out, account deletion and identifier changes"""

    def test_sign_out_keeps_record(self, store, storage):
        # Arrange:
        store.sign_in("u1")
        store.toggle_card("card-a")

        # Act:
        store.sign_out()

        # Assert:
        assert _stored(storage, "u1")["state"]["selectedCards"] == ["card-a"]

    def test_delete_account_removes_record(self, store, storage):
        # Arrange:
        store.sign_in("u1")
        store.toggle_card("card-a")

        # Act:
        store.delete_account()

        # Assert:
        assert storage.get_item(storage_key("u1")) is None
        assert store.state == StoreState.UNINITIALIZED

        store.sign_in("u1")
        assert store.selection.selected_card_ids == ()

    def test_switch_and_switch_back(self, store):
        """Test U -> V -> U restores U's selection exactly"""
        # Arrange:
        store.sign_in("u1")
        store.toggle_card("card-a")
        store.add_plan("plan-monthly")
        u1_selection = store.selection

        # Act:
        store.change_identifier("u1", "u2")
        u2_selection = store.selection
        store.toggle_card("card-b")
        store.change_identifier("u2", "u1")

        # Assert:
        assert u2_selection == CoverageSelection.empty("u2")
        assert store.user_id == "u1"
        assert store.selection == u1_selection

    def test_pending_writes_flushed_before_next_load(self, catalog):
        """Test the outgoing user's write lands before the incoming user is read"""
        # Arrange:
        storage = RecordingStorage()
        with CoverageStore(storage, catalog) as store:
            store.sign_in("u1")
            store.toggle_card("card-a")

            # Act:
            store.change_identifier("u1", "u2")

        # Assert:
        operations = storage.operations
        last_u1_write = max(i for i, op in enumerate(operations) if op == ("set", storage_key("u1")))
        u2_read = operations.index(("get", storage_key("u2")))
        assert last_u1_write < u2_read

    def test_identifier_cleared_signs_out(self, store, storage):
        store.sign_in("u1")
        store.toggle_card("card-a")

        store.change_identifier("u1", None)

        assert store.state == StoreState.UNINITIALIZED
        assert _stored(storage, "u1") is not None

    def test_event_during_load_is_queued(self, catalog):
        """Test an event raised while a load is in progress applies after it"""

        class ReentrantStorage(InMemoryStorage):
            def __init__(self):
                super().__init__()
                self.store = None
                self.seen = []

            def get_item(self, key):
                self.seen.append((key, self.store.user_id, self.store.state))
                if len(self.seen) == 1:
                    self.store.handle_event(IdentityEvent.identifier_changed("u1", "u2"))
                return super().get_item(key)

        # Arrange:
        storage = ReentrantStorage()
        with CoverageStore(storage, catalog, sweep_on_start=False) as store:
            storage.store = store

            # Act:
            store.sign_in("u1")

            # Assert:
            assert storage.seen[0] == (storage_key("u1"), "u1", StoreState.LOADING)
            assert storage.seen[1] == (storage_key("u2"), "u2", StoreState.LOADING)
            assert store.user_id == "u2"
            assert store.state == StoreState.READY

    def test_queued_event_applied_after_failed_load(self, catalog):
        """Test an event queued behind a failing load is still applied"""

        class ReentrantStorage(InMemoryStorage):
            def __init__(self, initial):
                super().__init__(initial)
                self.store = None
                self.queued = False

            def get_item(self, key):
                if not self.queued:
                    self.queued = True
                    self.store.handle_event(IdentityEvent.identifier_changed("u1", "u2"))
                return super().get_item(key)

        # Arrange:
        foreign = encode_selection(CoverageSelection.empty("intruder"))
        storage = ReentrantStorage({storage_key("u1"): foreign})
        with CoverageStore(storage, catalog, sweep_on_start=False) as store:
            storage.store = store

            # Act:
            with pytest.raises(IdentityMismatchError):
                store.sign_in("u1")

            # Assert:
            assert store.user_id == "u2"
            assert store.state == StoreState.READY
            store.sign_in("u3")
            assert store.user_id == "u3"

    def test_other_thread_waits_for_its_event(self, catalog):
        """Test an event from a second thread is applied before its call returns"""

        class GatedStorage(InMemoryStorage):
            def __init__(self, initial):
                super().__init__(initial)
                self.entered = threading.Event()
                self.release = threading.Event()

            def get_item(self, key):
                if key == storage_key("u1"):
                    self.entered.set()
                    self.release.wait(timeout=5)
                return super().get_item(key)

        # Arrange:
        foreign = encode_selection(CoverageSelection.empty("intruder"))
        storage = GatedStorage({storage_key("u1"): foreign})
        errors = {}

        with CoverageStore(storage, catalog, sweep_on_start=False) as store:

            def sign_in(user_id):
                try:
                    store.sign_in(user_id)
                except IdentityMismatchError as e:
                    errors[user_id] = e

            first = threading.Thread(target=sign_in, args=("u1",))
            first.start()
            assert storage.entered.wait(timeout=5)

            # Act:
            second = threading.Thread(target=sign_in, args=("u2",))
            second.start()
            second.join(timeout=0.2)
            still_waiting = second.is_alive()
            storage.release.set()
            first.join(timeout=5)
            second.join(timeout=5)

            # Assert:
            assert still_waiting
            assert not second.is_alive()
            assert list(errors) == ["u1"]
            assert store.user_id == "u2"
            assert store.state == StoreState.READY

    def test_events_apply_in_order(self, store):
        store.handle_event(IdentityEvent.signed_in("u1"))
        store.handle_event(IdentityEvent.identifier_changed("u1", "u2"))
        store.handle_event(IdentityEvent.signed_out())
        store.handle_event(IdentityEvent.signed_in("u3"))

        assert store.user_id == "u3"


class TestWriter:
    """Tests for the background writer"""

    def test_flush_times_out_on_stuck_write(self, catalog):
        # Arrange:
        storage = BlockingStorage()
        store = CoverageStore(storage, catalog)
        store.sign_in("u1")
        store.toggle_card("card-a")

        # Act & Assert:
        with pytest.raises(TimeoutError):
            store.flush(timeout=0.05)

        storage.release.set()
        store.close()
        assert storage.get_item(storage_key("u1")) is not None

    def test_writes_land_in_order(self, store, storage):
        """Test the last mutation is the one left in storage"""
        store.sign_in("u1")
        for _ in range(5):
            store.toggle_card("card-a")
        store.flush()

        assert _stored(storage, "u1")["state"]["selectedCards"] == ["card-a"]


class TestSweep:
    """Tests for the start-up sweep of stale records"""

    def test_sweep_removes_stale_and_legacy(self):
        # Arrange:
        current = encode_selection(CoverageSelection.empty("keep"))
        old = json.dumps({"state": {"userId": "old"}, "version": STORAGE_SCHEMA_VERSION - 1})
        storage = InMemoryStorage({
            storage_key("keep"): current,
            storage_key("old"): old,
            storage_key("garbled"): "not json",
            StoreConfig.LEGACY_KEYS[0]: "{}",
            "unrelated-key": "value",
        })

        # Act:
        removed = sweep_stale_records(storage)

        # Assert:
        assert sorted(removed) == sorted([storage_key("old"), storage_key("garbled"), StoreConfig.LEGACY_KEYS[0]])
        assert sorted(storage.keys()) == sorted([storage_key("keep"), "unrelated-key"])

    def test_store_sweeps_on_start(self, catalog):
        old = json.dumps({"state": {"userId": "old"}, "version": 1 + STORAGE_SCHEMA_VERSION})
        storage = InMemoryStorage({storage_key("old"): old})

        with CoverageStore(storage, catalog):
            pass

        assert storage.keys() == []

    def test_unreadable_store_file_does_not_block_start(self, catalog, tmp_path):
        """Test a corrupt store file is treated as empty by the sweep and by sign-in"""
        # Arrange:
        path = tmp_path / "store.json"
        path.write_bytes(b'{"covered-storage-u": "\xff\xfe"}')

        # Act:
        with CoverageStore(JsonFileStorage(path), catalog) as store:
            store.sign_in("u")
            selection = store.selection

        # Assert:
        assert selection == CoverageSelection.empty("u")

    def test_failed_sweep_does_not_block_start(self, catalog, caplog):
        class BrokenKeysStorage(InMemoryStorage):
            def keys(self):
                raise LookupError("storage offline")

        with CoverageStore(BrokenKeysStorage(), catalog) as store:
            store.sign_in("u1")
            assert store.state == StoreState.READY

        assert "Stale record sweep failed: storage offline" in caplog.text

    def test_sweep_can_be_skipped(self, catalog):
        old = json.dumps({"state": {"userId": "old"}, "version": 0})
        storage = InMemoryStorage({storage_key("old"): old})

        with CoverageStore(storage, catalog, sweep_on_start=False):
            pass

        assert storage.keys() == [storage_key("old")]

    def test_probe_version(self):
        assert probe_version(json.dumps({"version": 7, "state": {}})) == 7
        assert probe_version("[]") is None
        assert probe_version("{") is None
        assert probe_version(json.dumps({"state": {}})) is None
