"""
Reconciliation of the local spend ledger against indexed chain data.

Indexed data is eventually consistent and is never used to authorize
anything. This module only reports differences; it does not write to
the ledger.
"""

import logging
from decimal import Decimal

from .collaborators import IndexingCollaborator
from .errors import StateError
from .permissions import PermissionStore
from .types import ReconciliationReport

logger = logging.getLogger(__name__)


def reconcile_spend(
    store: PermissionStore,
    indexer: IndexingCollaborator,
    permission_id: str
) -> ReconciliationReport:
    """
    Compare a permission's local ledger with what the indexer has seen.

    Args:
        store: PermissionStore holding the local ledger
        indexer: Source of indexed transfers
        permission_id: Permission to reconcile

    Returns:
        Report listing references only the indexer knows (``missing_locally``)
        and references only the ledger knows (``not_indexed``)

    Raises:
        StateError: If the permission has no local ledger
    """
    tracking = store.get_spend_tracking(permission_id)
    if tracking is None:
        raise StateError(f"Spend tracking not found for permission {permission_id}")

    transfers = indexer.get_transfers(permission_id)

    local_refs = [entry.transaction_reference.lower() for entry in tracking.spend_entries]
    indexed_refs = [transfer.transaction_reference.lower() for transfer in transfers]
    local_set = set(local_refs)
    indexed_set = set(indexed_refs)

    report = ReconciliationReport(
        permission_id=permission_id,
        local_total=tracking.total_spent,
        indexed_total=sum((t.amount for t in transfers), Decimal('0')),
        missing_locally=[ref for ref in indexed_refs if ref not in local_set],
        not_indexed=[ref for ref in local_refs if ref not in indexed_set],
    )

    if report.in_sync:
        logger.debug("Ledger of %s in sync with indexer", permission_id)
    else:
        logger.warning(
            "Ledger of %s differs from indexer: %d missing locally, %d not indexed",
            permission_id, len(report.missing_locally), len(report.not_indexed),
        )
    return report
