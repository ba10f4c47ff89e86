"""
Permission store for Agent Autopilot.

This module provides the PermissionStore class, which owns every
permission and its spend ledger and acts as the authorization gate for
the execution pipeline.
"""

import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .collaborators import GrantCollaborator
from .errors import LedgerInvariantError, PersistenceError, StateError, ValidationError
from .policies import PermissionLimits, check_action, effective_status, validate_permission_request
from .storage import PERMISSIONS, SPEND_LEDGERS, JsonFileStorage, StorageDriver
from .types import (
    Permission,
    PermissionRequest,
    PermissionStatus,
    SpendEntry,
    SpendTracking,
    new_id,
    to_decimal,
    utc_now,
)

logger = logging.getLogger(__name__)


class PermissionStore:
    """
    PermissionStore owns permissions and their spend ledgers.

    The PermissionStore class provides the primary interface for:
    - Creating permissions through the grant collaborator
    - Listing permissions with lazy expiry applied
    - Revoking active permissions
    - Validating candidate actions against permission boundaries
    - Recording spend after a successful execution

    State is held in memory and flushed to the storage driver after every
    mutation. A failed flush is logged and the in-memory state stays
    authoritative for the lifetime of the process.
    """

    def __init__(
        self,
        grants: GrantCollaborator,
        storage: Optional[StorageDriver] = None,
        clock: Callable[[], datetime] = utc_now,
        limits: Optional[PermissionLimits] = None,
    ):
        """
        Initialize a PermissionStore and load any persisted state.

        Args:
            grants: Collaborator that issues and revokes grants
            storage: Optional storage driver (defaults to JsonFileStorage)
            clock: Callable returning the current UTC time
            limits: Optional product limits enforced at creation
        """
        self.grants = grants
        self.storage = storage if storage is not None else JsonFileStorage()
        self.limits = limits
        self._clock = clock
        self._permissions: Dict[str, Permission] = {}
        self._tracking: Dict[str, SpendTracking] = {}
        self._lock = threading.RLock()
        self.load()

    def load(self) -> None:
        """
        Replace in-memory state with what the storage driver holds.

        Records that fail validation are skipped with a warning.
        """
        try:
            raw_permissions = self.storage.load_collection(PERMISSIONS)
            raw_tracking = self.storage.load_collection(SPEND_LEDGERS)
        except PersistenceError as e:
            logger.warning("Failed to load persisted permissions: %s", e)
            return

        permissions: Dict[str, Permission] = {}
        for permission_id, data in raw_permissions.items():
            try:
                permissions[permission_id] = Permission.model_validate(data)
            except PydanticValidationError as e:
                logger.warning("Skipping unreadable permission %s: %s", permission_id, e)

        tracking: Dict[str, SpendTracking] = {}
        for permission_id, data in raw_tracking.items():
            try:
                tracking[permission_id] = SpendTracking.model_validate(data)
            except PydanticValidationError as e:
                logger.warning("Skipping unreadable spend ledger %s: %s", permission_id, e)

        with self._lock:
            self._permissions = permissions
            self._tracking = tracking

        if permissions:
            logger.info("Loaded %d persisted permissions", len(permissions))

    def save(self) -> bool:
        """
        Flush permissions and spend ledgers to storage.

        Returns:
            True if the write succeeded, False if it failed (and was logged)
        """
        with self._lock:
            permissions = {pid: p.model_dump(mode='json') for pid, p in self._permissions.items()}
            tracking = {pid: t.model_dump(mode='json') for pid, t in self._tracking.items()}
        try:
            self.storage.save_collection(PERMISSIONS, permissions)
            self.storage.save_collection(SPEND_LEDGERS, tracking)
        except PersistenceError as e:
            logger.warning("Failed to persist permissions: %s", e)
            return False
        return True

    def create_permission(
        self,
        request: Union[PermissionRequest, Mapping[str, Any]]
    ) -> Permission:
        """
        Validate a request, obtain an external grant and activate the permission.

        Args:
            request: PermissionRequest or a dict with the same fields

        Returns:
            The active permission

        Raises:
            ValidationError: If the request is malformed or the grant is refused

        Example:
            >>> permission = store.create_permission({
            ...     "token_address": "0x" + "a" * 40,
            ...     "max_spend_amount": "100",
            ...     "start_time": start,
            ...     "end_time": end,
            ...     "allowed_contracts": ["0x" + "b" * 40],
            ... })
        """
        if not isinstance(request, PermissionRequest):
            try:
                request = PermissionRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid permission request: {e}") from e

        validate_permission_request(request, self.limits)

        now = self._clock()
        permission = Permission(
            id=new_id('perm', now),
            token_address=request.token_address,
            max_spend_amount=request.max_spend_amount,
            start_time=request.start_time,
            end_time=request.end_time,
            allowed_contracts=list(request.allowed_contracts),
            status=PermissionStatus.PENDING,
            granted_at=now,
        )

        try:
            grant = self.grants.create_permission(
                spender=permission.allowed_contracts[0],
                token=permission.token_address,
                allowance=permission.max_spend_amount,
                start_time=permission.start_time,
                end_time=permission.end_time,
                permission_id=permission.id,
            )
        except Exception as e:
            logger.error("Grant request for %s failed: %s", permission.id, e)
            raise ValidationError(f"Permission creation failed: {e}") from e

        permission.grant_reference = grant.permission_id
        permission.transaction_reference = grant.transaction_reference
        permission.status = PermissionStatus.ACTIVE

        with self._lock:
            self._permissions[permission.id] = permission
            self._tracking[permission.id] = SpendTracking.initial(
                permission.id, permission.max_spend_amount
            )
        self.save()

        logger.info(
            "Permission %s active: token=%s max=%s window=%s..%s",
            permission.id,
            permission.token_address,
            permission.max_spend_amount,
            permission.start_time.isoformat(),
            permission.end_time.isoformat(),
        )
        return permission.model_copy(deep=True)

    def _refresh_status(self, permission: Permission) -> None:
        """Apply lazy expiry to a stored permission."""
        status = effective_status(permission, self._clock())
        if status != permission.status:
            logger.info("Permission %s expired at %s", permission.id, permission.end_time.isoformat())
            permission.status = status

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        """
        Get a single permission with lazy expiry applied.

        Returns:
            A copy of the permission, or None if unknown
        """
        with self._lock:
            permission = self._permissions.get(permission_id)
            if permission is None:
                return None
            self._refresh_status(permission)
            return permission.model_copy(deep=True)

    def get_permissions(
        self,
        status: Optional[Union[PermissionStatus, str]] = None
    ) -> List[Permission]:
        """
        List permissions, applying lazy expiry before filtering.

        Args:
            status: Optional status to filter on

        Returns:
            Copies of the matching permissions
        """
        wanted = PermissionStatus(status) if status is not None else None
        with self._lock:
            result = []
            for permission in self._permissions.values():
                self._refresh_status(permission)
                if wanted is None or permission.status == wanted:
                    result.append(permission.model_copy(deep=True))
            return result

    def revoke_permission(self, permission_id: str) -> Permission:
        """
        Revoke an active permission.

        Args:
            permission_id: Permission to revoke

        Returns:
            The revoked permission

        Raises:
            StateError: If the permission is unknown, not active, or the
                grant collaborator refuses the revocation
        """
        with self._lock:
            permission = self._permissions.get(permission_id)
            if permission is None:
                raise StateError(f"Permission not found: {permission_id}")

            self._refresh_status(permission)
            if permission.status != PermissionStatus.ACTIVE:
                raise StateError(
                    f"Permission {permission_id} is {permission.status.value}; "
                    "can only revoke active permissions"
                )

            try:
                self.grants.revoke_permission(permission.grant_reference or permission.id)
            except Exception as e:
                logger.error("Revocation of %s failed: %s", permission_id, e)
                raise StateError(f"Permission revocation failed: {e}") from e

            permission.status = PermissionStatus.REVOKED
            revoked = permission.model_copy(deep=True)

        self.save()
        logger.info("Permission %s revoked", permission_id)
        return revoked

    def validate_action(
        self,
        permission_id: str,
        token_address: str,
        amount: Union[Decimal, str, float, int],
        contract_address: str
    ) -> bool:
        """
        Check whether an action is within a permission's boundaries.

        Read-only: neither the permission nor its ledger is modified. See
        ``policies.check_action`` for the order of the checks.

        Returns:
            True if every boundary holds, False otherwise
        """
        reason = self.describe_violation(permission_id, token_address, amount, contract_address)
        if reason is not None:
            logger.info("Action on %s rejected: %s", permission_id, reason)
            return False
        logger.debug("Action on %s within boundaries", permission_id)
        return True

    def describe_violation(
        self,
        permission_id: str,
        token_address: str,
        amount: Union[Decimal, str, float, int],
        contract_address: str
    ) -> Optional[str]:
        """
        Same checks as ``validate_action`` but returns the first failing reason.

        Returns:
            None when the action is within boundaries
        """
        try:
            amount_decimal = to_decimal(amount)
        except ValueError:
            return f"Invalid amount: {amount!r}"

        with self._lock:
            return check_action(
                permission=self._permissions.get(permission_id),
                tracking=self._tracking.get(permission_id),
                token_address=token_address,
                amount=amount_decimal,
                contract_address=contract_address,
                now=self._clock(),
            )

    def record_spend(
        self,
        permission_id: str,
        amount: Union[Decimal, str, float, int],
        transaction_reference: str
    ) -> SpendEntry:
        """
        Append a spend to a permission's ledger.

        Boundaries are NOT re-checked here; callers are expected to have
        passed ``validate_action`` in the same pipeline run.

        Returns:
            The appended entry

        Raises:
            LedgerInvariantError: If the permission has no ledger or the
                amount is not positive
        """
        amount_decimal = to_decimal(amount)
        if amount_decimal <= 0:
            raise LedgerInvariantError(f"Spend amount must be positive, got {amount_decimal}")

        with self._lock:
            tracking = self._tracking.get(permission_id)
            if tracking is None:
                raise LedgerInvariantError(
                    f"Spend tracking not found for permission {permission_id}"
                )

            tracking.total_spent += amount_decimal
            tracking.remaining_allowance -= amount_decimal
            entry = SpendEntry(
                timestamp=self._clock(),
                amount=amount_decimal,
                transaction_reference=transaction_reference,
                remaining_after=tracking.remaining_allowance,
            )
            tracking.spend_entries.append(entry)

        self.save()
        logger.info(
            "Recorded spend of %s on %s (tx %s), remaining %s",
            amount_decimal, permission_id, transaction_reference, entry.remaining_after,
        )
        return entry.model_copy()

    def get_spend_tracking(self, permission_id: str) -> Optional[SpendTracking]:
        """Get a copy of a permission's spend ledger, or None if unknown."""
        with self._lock:
            tracking = self._tracking.get(permission_id)
            return tracking.model_copy(deep=True) if tracking is not None else None

    def is_active(self, permission_id: str) -> bool:
        """True if the permission exists and is active after lazy expiry."""
        permission = self.get_permission(permission_id)
        return permission is not None and permission.status == PermissionStatus.ACTIVE
