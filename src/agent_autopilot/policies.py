"""
Pure policy logic for Agent Autopilot.

This module contains deterministic, side-effect-free functions for:
- Validating address formats and permission requests
- Deriving a permission's effective status (lazy expiry)
- Checking a candidate action against permission boundaries
- Checking the spend ledger invariant

All authorization decisions are deterministic and explicit.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .errors import ValidationError
from .types import Permission, PermissionRequest, PermissionStatus, SpendTracking, ensure_utc

ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

# total_spent + remaining_allowance may drift by this much and still be consistent
LEDGER_TOLERANCE = Decimal('0.000001')


class PermissionLimits(BaseModel):
    """
    Optional product limits applied on top of the basic request checks.

    Attributes:
        min_spend_amount: Smallest allowed spend cap
        max_spend_amount: Largest allowed spend cap
        min_duration_hours: Shortest allowed validity window
        max_duration_days: Longest allowed validity window
        max_allowed_contracts: Largest allowlist size
    """
    min_spend_amount: Decimal = Decimal('0.001')
    max_spend_amount: Decimal = Decimal('1000')
    min_duration_hours: int = Field(default=1, ge=0)
    max_duration_days: int = Field(default=365, gt=0)
    max_allowed_contracts: int = Field(default=10, gt=0)


def is_valid_address(address: Optional[str]) -> bool:
    """
    Check that a string is a 0x-prefixed, 40 hex digit address.

    Args:
        address: Address to check

    Returns:
        True if well-formed, False otherwise
    """
    if not isinstance(address, str):
        return False
    return ADDRESS_PATTERN.match(address) is not None


def same_address(a: str, b: str) -> bool:
    """Compare two addresses ignoring checksum casing."""
    return a.lower() == b.lower()


def validate_permission_request(
    request: PermissionRequest,
    limits: Optional[PermissionLimits] = None
) -> None:
    """
    Validate a permission request, raising on the first violation.

    Args:
        request: Request to validate
        limits: Optional product limits to enforce as well

    Raises:
        ValidationError: If the request is malformed
    """
    if not request.token_address or not is_valid_address(request.token_address):
        raise ValidationError("Invalid token address")

    if not request.max_spend_amount.is_finite() or request.max_spend_amount <= 0:
        raise ValidationError("Invalid spend amount")

    if request.end_time <= request.start_time:
        raise ValidationError("End time must be after start time")

    if not request.allowed_contracts:
        raise ValidationError("At least one contract address is required")

    for address in request.allowed_contracts:
        if not is_valid_address(address):
            raise ValidationError(f"Invalid contract address: {address}")

    if limits is not None:
        _validate_against_limits(request, limits)


def _validate_against_limits(request: PermissionRequest, limits: PermissionLimits) -> None:
    amount = request.max_spend_amount
    if amount < limits.min_spend_amount or amount > limits.max_spend_amount:
        raise ValidationError(
            f"Spend amount must be between {limits.min_spend_amount} and {limits.max_spend_amount}"
        )

    duration = request.end_time - request.start_time
    if duration.total_seconds() < limits.min_duration_hours * 3600:
        raise ValidationError(
            f"Permission duration must be at least {limits.min_duration_hours} hour(s)"
        )
    if duration.total_seconds() > limits.max_duration_days * 86400:
        raise ValidationError(
            f"Permission duration cannot exceed {limits.max_duration_days} days"
        )

    if len(request.allowed_contracts) > limits.max_allowed_contracts:
        raise ValidationError(
            f"Maximum {limits.max_allowed_contracts} contracts allowed"
        )


def effective_status(permission: Permission, now: datetime) -> PermissionStatus:
    """
    Derive the status a permission has at ``now``.

    Revocation is sticky. An active permission whose window has ended is expired.
    """
    if permission.status == PermissionStatus.ACTIVE and permission.is_past_window(now):
        return PermissionStatus.EXPIRED
    return permission.status


def check_action(
    permission: Optional[Permission],
    tracking: Optional[SpendTracking],
    token_address: str,
    amount: Decimal,
    contract_address: str,
    now: datetime
) -> Optional[str]:
    """
    Check a candidate action against a permission's boundaries.

    Checks run in a fixed order and stop at the first failure:
    1. Permission exists and is active (after lazy expiry)
    2. Token matches the permission's token
    3. Contract is in the allowlist
    4. The permission has a spend ledger and total spent plus amount stays
       within the spend cap
    5. ``now`` lies inside the validity window

    Args:
        permission: Permission to check against (None if unknown)
        tracking: Spend ledger of the permission
        token_address: Token the action spends
        amount: Amount the action spends
        contract_address: Contract the action targets
        now: Current timestamp

    Returns:
        None if every check passes, otherwise a short reason for the failure
    """
    if permission is None:
        return "Permission not found"

    status = effective_status(permission, now)
    if status != PermissionStatus.ACTIVE:
        return f"Permission is {status.value}"

    if not same_address(permission.token_address, token_address):
        return f"Token mismatch: expected {permission.token_address}, got {token_address}"

    if not any(same_address(allowed, contract_address) for allowed in permission.allowed_contracts):
        return f"Contract not allowed: {contract_address}"

    if tracking is None:
        return "Spend tracking not found"

    if tracking.total_spent + amount > permission.max_spend_amount:
        return (
            f"Spend limit exceeded: {tracking.total_spent} + {amount} > {permission.max_spend_amount}"
        )

    now = ensure_utc(now)
    if now < permission.start_time or now > permission.end_time:
        return "Outside permission time window"

    return None


def ledger_is_consistent(
    permission: Permission,
    tracking: SpendTracking,
    tolerance: Decimal = LEDGER_TOLERANCE
) -> bool:
    """
    Check ``total_spent + remaining_allowance == max_spend_amount`` within tolerance.
    """
    drift = tracking.total_spent + tracking.remaining_allowance - permission.max_spend_amount
    return abs(drift) <= tolerance
