"""
External collaborators consumed by Agent Autopilot.

Wallet grants, transaction broadcast, market data and chain indexing all
live outside this package. Each is consumed through a narrow Protocol so
real integrations and the simulated ones below are interchangeable.
"""

import logging
import random
import secrets
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from .errors import ExecutionError, StateError
from .types import (
    GrantResult,
    IndexedTransfer,
    MarketContext,
    NetworkCongestion,
    TransactionResult,
    utc_now,
)

logger = logging.getLogger(__name__)


class GrantCollaborator(Protocol):
    """Wallet/account layer that issues and revokes spending grants."""

    def create_permission(
        self,
        spender: str,
        token: str,
        allowance: Decimal,
        start_time: datetime,
        end_time: datetime,
        permission_id: str,
    ) -> GrantResult:
        """
        Request a grant. Raises any exception on refusal or failure.
        """
        ...

    def revoke_permission(self, grant_reference: str) -> None:
        """
        Revoke a previously issued grant. Raises on failure.
        """
        ...


class ExecutionCollaborator(Protocol):
    """Signs and broadcasts a transaction under a granted permission."""

    def execute(
        self,
        destination: str,
        value: Optional[Decimal],
        data: Optional[str],
        permission_ref: str,
    ) -> TransactionResult:
        """
        Carry out the transaction.

        Raises:
            ExecutionError: If the transaction cannot be carried out
        """
        ...


class MarketDataSource(Protocol):
    """Provides the market snapshot a decision is taken against."""

    def get_market_context(self) -> MarketContext:
        ...


class IndexingCollaborator(Protocol):
    """Read-only, eventually consistent view of spends observed on chain."""

    def get_transfers(self, permission_id: str) -> List[IndexedTransfer]:
        ...


def _random_hash() -> str:
    return '0x' + secrets.token_hex(32)


class SimulatedGrantCollaborator:
    """
    Grant collaborator that approves every request locally.

    Keeps track of issued grants so that revoking an unknown grant fails
    the way a real wallet would. With ``strict=False`` unknown grants are
    revoked silently, which suits short-lived processes such as the CLI.
    """

    def __init__(self, strict: bool = True):
        self.strict = strict
        self._grants: Dict[str, GrantResult] = {}
        self._lock = threading.Lock()

    def create_permission(
        self,
        spender: str,
        token: str,
        allowance: Decimal,
        start_time: datetime,
        end_time: datetime,
        permission_id: str,
    ) -> GrantResult:
        result = GrantResult(
            permission_id=permission_id,
            signature=_random_hash(),
            transaction_reference=_random_hash(),
        )
        with self._lock:
            self._grants[permission_id] = result
        logger.info(
            "Simulated grant %s: spender=%s token=%s allowance=%s",
            permission_id, spender, token, allowance,
        )
        return result

    def revoke_permission(self, grant_reference: str) -> None:
        with self._lock:
            if grant_reference not in self._grants and self.strict:
                raise StateError(f"Unknown grant: {grant_reference}")
            self._grants.pop(grant_reference, None)
        logger.info("Simulated revoke of grant %s", grant_reference)

    @property
    def active_grants(self) -> List[str]:
        with self._lock:
            return list(self._grants)


class SimulatedExecutor:
    """
    Execution collaborator that returns a random transaction hash.

    Every call is remembered in ``calls``. Set ``fail_with`` to make the
    next calls raise ExecutionError with that message.
    """

    def __init__(self, fail_with: Optional[str] = None, gas_used: str = '0'):
        self.fail_with = fail_with
        self.gas_used = gas_used
        self.calls: List[Dict[str, object]] = []

    def execute(
        self,
        destination: str,
        value: Optional[Decimal],
        data: Optional[str],
        permission_ref: str,
    ) -> TransactionResult:
        self.calls.append({
            'destination': destination,
            'value': value,
            'data': data,
            'permission_ref': permission_ref,
        })
        if self.fail_with is not None:
            raise ExecutionError(self.fail_with)
        return TransactionResult(tx_reference=_random_hash(), gas_used=self.gas_used)


class StaticMarketData:
    """Market data source that always returns the same snapshot (fresh timestamp)."""

    def __init__(
        self,
        gas_price: str = '20',
        token_price: str = '2000',
        network_congestion: NetworkCongestion = NetworkCongestion.LOW,
    ):
        self.gas_price = Decimal(str(gas_price))
        self.token_price = Decimal(str(token_price))
        self.network_congestion = NetworkCongestion(network_congestion)

    def get_market_context(self) -> MarketContext:
        return MarketContext(
            gas_price=self.gas_price,
            token_price=self.token_price,
            network_congestion=self.network_congestion,
            timestamp=utc_now(),
        )


class RandomMarketData:
    """
    Market data source producing plausible random snapshots.

    Gas between 20 and 100 gwei, token price between 1800 and 2200 USD,
    congestion uniformly low, medium or high.
    """

    def __init__(self, seed: Optional[int] = None):
        self._rng = random.Random(seed)

    def get_market_context(self) -> MarketContext:
        gas = Decimal(str(round(20 + self._rng.random() * 80, 1)))
        price = Decimal(str(round(1800 + self._rng.random() * 400, 2)))
        congestion = self._rng.choice(list(NetworkCongestion))
        return MarketContext(
            gas_price=gas,
            token_price=price,
            network_congestion=congestion,
            timestamp=utc_now(),
        )


class InMemoryIndexer:
    """Indexing collaborator backed by a dict, fed through ``add_transfer``."""

    def __init__(self):
        self._transfers: Dict[str, List[IndexedTransfer]] = {}

    def add_transfer(self, permission_id: str, transfer: IndexedTransfer) -> None:
        self._transfers.setdefault(permission_id, []).append(transfer)

    def get_transfers(self, permission_id: str) -> List[IndexedTransfer]:
        return list(self._transfers.get(permission_id, []))
