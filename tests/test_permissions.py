"""
Tests for PermissionStore.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from agent_autopilot.errors import LedgerInvariantError, PersistenceError, StateError, ValidationError
from agent_autopilot.permissions import PermissionStore
from agent_autopilot.policies import PermissionLimits, ledger_is_consistent
from agent_autopilot.storage import InMemoryStorage
from agent_autopilot.types import PermissionStatus

from conftest import OTHER_CONTRACT, ROUTER, TOKEN


class RefusingGrants:
    """Grant collaborator whose wallet refuses everything."""

    def create_permission(self, **kwargs):
        raise RuntimeError("User rejected the request")

    def revoke_permission(self, grant_reference):
        raise RuntimeError("Wallet disconnected")


class BrokenStorage(InMemoryStorage):
    """Storage whose writes always fail."""

    def save_collection(self, namespace, records):
        raise PersistenceError("disk full")


class TestCreatePermission:
    """Tests for permission creation."""

    def test_create_activates_and_initializes_ledger(self, store, make_request, grants):
        permission = store.create_permission(make_request())

        assert permission.id.startswith("perm_")
        assert permission.status == PermissionStatus.ACTIVE
        assert permission.max_spend_amount == Decimal("100")
        assert permission.grant_reference == permission.id
        assert permission.transaction_reference.startswith("0x")
        assert permission.id in grants.active_grants

        tracking = store.get_spend_tracking(permission.id)
        assert tracking.total_spent == Decimal("0")
        assert tracking.remaining_allowance == Decimal("100")
        assert tracking.spend_entries == []

    def test_create_persists(self, store, make_request, temp_storage):
        permission = store.create_permission(make_request())

        assert permission.id in temp_storage.load_collection("permissions")
        assert permission.id in temp_storage.load_collection("spend_ledgers")

    def test_invalid_request_is_not_stored(self, store, make_request):
        with pytest.raises(ValidationError, match="Invalid spend amount"):
            store.create_permission(make_request(max_spend_amount="0"))

        assert store.get_permissions() == []

    def test_unparseable_request(self, store, make_request):
        with pytest.raises(ValidationError, match="Invalid permission request"):
            store.create_permission(make_request(max_spend_amount="lots"))

        with pytest.raises(ValidationError):
            store.create_permission({"token_address": TOKEN})

    def test_refused_grant_is_validation_error(self, temp_storage, clock, make_request):
        store = PermissionStore(grants=RefusingGrants(), storage=temp_storage, clock=clock)

        with pytest.raises(ValidationError, match="Permission creation failed: User rejected"):
            store.create_permission(make_request())

        assert store.get_permissions() == []

    def test_limits_enforced_when_configured(self, grants, temp_storage, clock, make_request):
        store = PermissionStore(
            grants=grants, storage=temp_storage, clock=clock, limits=PermissionLimits()
        )

        with pytest.raises(ValidationError, match="Permission duration"):
            store.create_permission(
                make_request(start_time=clock.now, end_time=clock.now + timedelta(minutes=10))
            )

    def test_returned_permission_is_a_copy(self, store, permission):
        permission.status = PermissionStatus.REVOKED
        assert store.get_permission(permission.id).status == PermissionStatus.ACTIVE


class TestGetPermissions:
    """Tests for listing permissions."""

    def test_filter_by_status(self, store, make_request):
        first = store.create_permission(make_request())
        second = store.create_permission(make_request())
        store.revoke_permission(second.id)

        active = store.get_permissions(PermissionStatus.ACTIVE)
        revoked = store.get_permissions("revoked")

        assert [p.id for p in active] == [first.id]
        assert [p.id for p in revoked] == [second.id]
        assert len(store.get_permissions()) == 2

    def test_lazy_expiry_on_read(self, store, permission, clock):
        clock.advance(days=2)

        expired = store.get_permissions(PermissionStatus.EXPIRED)
        assert [p.id for p in expired] == [permission.id]
        assert store.get_permissions(PermissionStatus.ACTIVE) == []
        assert store.get_permission(permission.id).status == PermissionStatus.EXPIRED

    def test_revoked_not_turned_expired(self, store, permission, clock):
        store.revoke_permission(permission.id)
        clock.advance(days=2)

        assert store.get_permission(permission.id).status == PermissionStatus.REVOKED

    def test_unknown_permission(self, store):
        assert store.get_permission("perm_missing") is None
        assert store.get_spend_tracking("perm_missing") is None


class TestRevokePermission:
    """Tests for revocation."""

    def test_revoke_active(self, store, permission, grants):
        revoked = store.revoke_permission(permission.id)

        assert revoked.status == PermissionStatus.REVOKED
        assert store.get_permission(permission.id).status == PermissionStatus.REVOKED
        assert permission.id not in grants.active_grants

    def test_revoke_expired_rejected(self, store, permission, clock):
        clock.advance(days=2)

        with pytest.raises(StateError, match="can only revoke active permissions"):
            store.revoke_permission(permission.id)

        assert store.get_permission(permission.id).status == PermissionStatus.EXPIRED

    def test_revoke_twice_rejected(self, store, permission):
        store.revoke_permission(permission.id)

        with pytest.raises(StateError, match="can only revoke active permissions"):
            store.revoke_permission(permission.id)

    def test_revoke_unknown(self, store):
        with pytest.raises(StateError, match="Permission not found"):
            store.revoke_permission("perm_missing")

    def test_wallet_failure_keeps_permission_active(self, temp_storage, clock, make_request, grants):
        store = PermissionStore(grants=grants, storage=temp_storage, clock=clock)
        permission = store.create_permission(make_request())
        store.grants = RefusingGrants()

        with pytest.raises(StateError, match="Permission revocation failed"):
            store.revoke_permission(permission.id)

        assert store.get_permission(permission.id).status == PermissionStatus.ACTIVE


class TestValidateAction:
    """Tests for validate_action."""

    def test_valid_action(self, store, permission):
        assert store.validate_action(permission.id, TOKEN, "10", ROUTER) is True

    def test_unknown_permission(self, store):
        assert store.validate_action("perm_missing", TOKEN, "10", ROUTER) is False

    def test_revoked_permission(self, store, permission):
        store.revoke_permission(permission.id)
        assert store.validate_action(permission.id, TOKEN, "10", ROUTER) is False

    def test_expired_permission(self, store, permission, clock):
        clock.advance(days=1, seconds=1)
        assert store.validate_action(permission.id, TOKEN, "10", ROUTER) is False

    def test_not_yet_started(self, store, make_request, clock):
        permission = store.create_permission(
            make_request(start_time=clock.now + timedelta(hours=1))
        )
        assert store.validate_action(permission.id, TOKEN, "10", ROUTER) is False

        clock.advance(hours=1)
        assert store.validate_action(permission.id, TOKEN, "10", ROUTER) is True

    def test_window_edges_inclusive(self, store, make_request, clock):
        permission = store.create_permission(
            make_request(start_time=clock.now, end_time=clock.now + timedelta(hours=1))
        )
        assert store.validate_action(permission.id, TOKEN, "10", ROUTER) is True

        clock.advance(hours=1)
        assert store.validate_action(permission.id, TOKEN, "10", ROUTER) is True

    def test_token_mismatch(self, store, permission):
        assert store.validate_action(permission.id, "0x" + "ee" * 20, "10", ROUTER) is False

    def test_contract_not_allowed(self, store, permission):
        assert store.validate_action(permission.id, TOKEN, "10", OTHER_CONTRACT) is False

    def test_exact_limit_allowed(self, store, permission):
        assert store.validate_action(permission.id, TOKEN, "100", ROUTER) is True
        assert store.validate_action(permission.id, TOKEN, "100.01", ROUTER) is False

    def test_invalid_amount(self, store, permission):
        assert store.validate_action(permission.id, TOKEN, "ten", ROUTER) is False

    def test_is_read_only(self, store, permission):
        before = store.get_spend_tracking(permission.id)
        store.validate_action(permission.id, TOKEN, "10", ROUTER)
        assert store.get_spend_tracking(permission.id) == before

    def test_describe_violation(self, store, permission):
        assert store.describe_violation(permission.id, TOKEN, "10", ROUTER) is None
        assert "Contract not allowed" in store.describe_violation(
            permission.id, TOKEN, "10", OTHER_CONTRACT
        )


class TestRecordSpend:
    """Tests for record_spend and the ledger invariant."""

    def test_record_spend_updates_ledger(self, store, permission, clock):
        entry = store.record_spend(permission.id, "40", "0xabc")

        assert entry.amount == Decimal("40")
        assert entry.remaining_after == Decimal("60")
        assert entry.transaction_reference == "0xabc"
        assert entry.timestamp == clock.now

        tracking = store.get_spend_tracking(permission.id)
        assert tracking.total_spent == Decimal("40")
        assert tracking.remaining_allowance == Decimal("60")
        assert len(tracking.spend_entries) == 1

    def test_invariant_holds_across_spends(self, store, permission):
        for amount in ["0.1", "0.2", "12.345678", "7"]:
            store.record_spend(permission.id, amount, f"0x{amount}")
            tracking = store.get_spend_tracking(permission.id)
            assert ledger_is_consistent(store.get_permission(permission.id), tracking)

        tracking = store.get_spend_tracking(permission.id)
        assert tracking.total_spent == Decimal("19.645678")
        assert [e.transaction_reference for e in tracking.spend_entries] == [
            "0x0.1", "0x0.2", "0x12.345678", "0x7"
        ]

    def test_validate_then_record_scenario(self, store, permission):
        assert store.validate_action(permission.id, TOKEN, "40", ROUTER) is True
        store.record_spend(permission.id, "40", "0x1")

        assert store.validate_action(permission.id, TOKEN, "70", ROUTER) is False
        assert store.validate_action(permission.id, TOKEN, "60", ROUTER) is True

    def test_missing_tracking_is_fatal(self, store):
        with pytest.raises(LedgerInvariantError, match="Spend tracking not found"):
            store.record_spend("perm_missing", "1", "0x1")

    def test_non_positive_amount_is_fatal(self, store, permission):
        with pytest.raises(LedgerInvariantError):
            store.record_spend(permission.id, "0", "0x1")

        with pytest.raises(LedgerInvariantError):
            store.record_spend(permission.id, "-5", "0x1")

    def test_no_revalidation(self, store, permission):
        # Reconciliation paths may record spend beyond local limits
        store.record_spend(permission.id, "150", "0xobserved")

        tracking = store.get_spend_tracking(permission.id)
        assert tracking.total_spent == Decimal("150")
        assert tracking.remaining_allowance == Decimal("-50")


class TestPersistence:
    """Tests for reload and failure handling."""

    def test_reload_reproduces_fields(self, store, permission, grants, temp_storage, clock):
        store.record_spend(permission.id, "12.5", "0xfeed")
        clock.advance(minutes=5)
        store.record_spend(permission.id, "7.25", "0xbeef")

        reloaded = PermissionStore(grants=grants, storage=temp_storage, clock=clock)

        assert reloaded.get_permission(permission.id).model_dump() == store.get_permission(permission.id).model_dump()
        assert (
            reloaded.get_spend_tracking(permission.id).model_dump()
            == store.get_spend_tracking(permission.id).model_dump()
        )

        original = store.get_permission(permission.id)
        restored = reloaded.get_permission(permission.id)
        assert restored.start_time == original.start_time
        assert restored.granted_at == original.granted_at
        assert restored.granted_at.microsecond == 123456

    def test_write_failure_is_not_fatal(self, grants, clock, make_request):
        store = PermissionStore(grants=grants, storage=BrokenStorage(), clock=clock)

        permission = store.create_permission(make_request())
        store.record_spend(permission.id, "5", "0x1")

        assert store.get_spend_tracking(permission.id).total_spent == Decimal("5")
        assert store.save() is False

    def test_unreadable_ledger_denies_actions(self, store, permission, grants, temp_storage, clock):
        ledgers = temp_storage.load_collection("spend_ledgers")
        ledgers[permission.id] = {"total_spent": "not a number"}
        temp_storage.save_collection("spend_ledgers", ledgers)

        reloaded = PermissionStore(grants=grants, storage=temp_storage, clock=clock)

        assert reloaded.get_permission(permission.id) is not None
        assert reloaded.get_spend_tracking(permission.id) is None
        assert reloaded.validate_action(permission.id, TOKEN, "10", ROUTER) is False
        assert reloaded.describe_violation(permission.id, TOKEN, "10", ROUTER) == "Spend tracking not found"

    def test_unreadable_records_skipped(self, grants, clock):
        storage = InMemoryStorage()
        storage.save_collection("permissions", {"perm_bad": {"id": "perm_bad"}})

        store = PermissionStore(grants=grants, storage=storage, clock=clock)
        assert store.get_permissions() == []
