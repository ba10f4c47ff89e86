"""
Local storage implementation for Agent Autopilot.

Provides a protocol-based interface and two implementations: a JSON file
store for durable local state and an in-memory store for tests and
ephemeral runs.

Storage is a namespaced key/value store. Every write replaces a whole
namespace with a snapshot of the collection, keyed by entity id.
"""

import copy
import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .errors import PersistenceError

PERMISSIONS = 'permissions'
SPEND_LEDGERS = 'spend_ledgers'
EXECUTIONS = 'executions'
SCHEDULES = 'schedules'

NAMESPACES = (PERMISSIONS, SPEND_LEDGERS, EXECUTIONS, SCHEDULES)

Collection = Dict[str, Dict[str, Any]]


class StorageDriver(Protocol):
    """
    Protocol defining the storage interface for all persisted collections.

    Implementations must be safe to call from multiple threads and must raise
    PersistenceError (never anything else) when the backing store fails.
    """

    def save_collection(self, namespace: str, records: Collection) -> None:
        """
        Replace the stored snapshot of a namespace.

        Args:
            namespace: Collection name (e.g. "permissions")
            records: JSON-compatible records keyed by entity id
        """
        ...

    def load_collection(self, namespace: str) -> Collection:
        """
        Load the stored snapshot of a namespace.

        Args:
            namespace: Collection name

        Returns:
            Records keyed by entity id, empty if nothing was saved yet
        """
        ...

    def clear(self, namespace: Optional[str] = None) -> None:
        """
        Remove one namespace, or everything when namespace is None.
        """
        ...


class JsonFileStorage:
    """
    Thread-safe JSON file storage implementation.

    Stores every collection in a single JSON file at
    ~/.agent_autopilot/state.json by default.

    File structure:
    {
        "permissions": {"perm_...": {...}},
        "spend_ledgers": {"perm_...": {...}},
        "executions": {"exec_...": {...}},
        "schedules": {"schedule_...": {...}}
    }
    """

    def __init__(self, path: Optional[str] = None):
        """
        Initialize JSON file storage.

        Args:
            path: Optional custom path for the storage file.
                  Defaults to ~/.agent_autopilot/state.json
        """
        if path is None:
            home = Path.home()
            self.path = home / '.agent_autopilot' / 'state.json'
        else:
            self.path = Path(path)

        self._lock = threading.Lock()
        self._ensure_file_exists()

    def _ensure_file_exists(self) -> None:
        """Create the storage file and parent directory if they don't exist."""
        if not self.path.exists():
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PersistenceError(f"Cannot create storage directory {self.path.parent}: {e}") from e
            self._write_data({namespace: {} for namespace in NAMESPACES})

    def _read_data(self) -> Dict[str, Any]:
        """
        Read and parse the storage file.

        Returns:
            Parsed JSON data
        """
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e

    def _write_data(self, data: Dict[str, Any]) -> None:
        """
        Write data to the storage file.

        The file is written to a sibling temp file first and then moved into
        place, so a crash mid-write leaves the previous snapshot intact.

        Args:
            data: Data to write
        """
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            tmp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e

    def save_collection(self, namespace: str, records: Collection) -> None:
        """
        Replace the stored snapshot of a namespace.

        Thread-safe read-modify-write of the whole file.

        Args:
            namespace: Collection name
            records: JSON-compatible records keyed by entity id
        """
        with self._lock:
            data = self._read_data()
            data[namespace] = records
            self._write_data(data)

    def load_collection(self, namespace: str) -> Collection:
        """
        Load the stored snapshot of a namespace.

        Thread-safe read operation.

        Args:
            namespace: Collection name

        Returns:
            Records keyed by entity id
        """
        with self._lock:
            data = self._read_data()
            return data.get(namespace) or {}

    def clear(self, namespace: Optional[str] = None) -> None:
        with self._lock:
            if namespace is None:
                self._write_data({name: {} for name in NAMESPACES})
                return
            data = self._read_data()
            data[namespace] = {}
            self._write_data(data)


class InMemoryStorage:
    """
    Process-local storage that keeps deep copies of each snapshot.

    Useful for tests and for runs where durability is not needed. Records
    are copied on the way in and out so callers can't mutate stored state.
    """

    def __init__(self):
        self._data: Dict[str, Collection] = {}
        self._lock = threading.Lock()

    def save_collection(self, namespace: str, records: Collection) -> None:
        with self._lock:
            self._data[namespace] = copy.deepcopy(records)

    def load_collection(self, namespace: str) -> Collection:
        with self._lock:
            return copy.deepcopy(self._data.get(namespace, {}))

    def clear(self, namespace: Optional[str] = None) -> None:
        with self._lock:
            if namespace is None:
                self._data.clear()
            else:
                self._data.pop(namespace, None)
