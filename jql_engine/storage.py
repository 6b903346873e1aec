"""
Thread-safe storage module for saved queries.

Persists saved queries to a JSON file with schema:
{
    "id": string,
    "name": string,
    "description": string,
    "jql": string,
    "target_index": string,
    "query": object (compiled query document),
    "tags": [string],
    "execution_count": integer,
    "last_executed_at": ISO8601 datetime or null,
    "created_at": ISO8601 datetime,
    "updated_at": ISO8601 datetime
}
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import SavedQueryNotFoundError
from .models import SOURCE_SAVED_QUERY, JoinSource


logger = logging.getLogger(__name__)

PROTECTED_FIELDS = ('id', 'created_at', 'execution_count', 'last_executed_at')


class SavedQueryStorage:
    """Thread-safe storage for saved queries."""

    def __init__(self, storage_path: str | Path = "data/saved_queries.json"):
        """Initialize the saved query storage.

        Args:
            storage_path: Path to the saved queries JSON file
        """
        self.storage_path = Path(storage_path)
        self._lock = threading.RLock()
        self._ensure_file_exists()

    def _ensure_file_exists(self) -> None:
        """Ensure the storage file exists."""
        with self._lock:
            if not self.storage_path.exists():
                self.storage_path.parent.mkdir(parents=True, exist_ok=True)
                self._write_file([])
                logger.info("Created saved query store at %s", self.storage_path)

    def _read_file(self) -> List[Dict[str, Any]]:
        """Read the saved queries file.

        Returns:
            List of saved query dictionaries
        """
        try:
            with open(self.storage_path, 'r') as f:
                content = f.read().strip()
                if not content:
                    return []
                return json.loads(content)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            logger.error("Saved query store %s is corrupt: %s", self.storage_path, e)
            return []

    def _write_file(self, queries: List[Dict[str, Any]]) -> None:
        with open(self.storage_path, 'w') as f:
            json.dump(queries, f, indent=2)

    def get_all(
        self,
        target_index: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get saved queries, optionally filtered.

        Args:
            target_index: Only return queries against this index
            tag: Only return queries carrying this tag

        Returns:
            List of saved queries
        """
        with self._lock:
            queries = self._read_file()

        if target_index is not None:
            queries = [q for q in queries if q.get("target_index") == target_index]
        if tag is not None:
            queries = [q for q in queries if tag in (q.get("tags") or [])]
        return queries

    def get_by_id(self, query_id: str) -> Optional[Dict[str, Any]]:
        """Get a saved query by ID.

        Returns:
            The saved query dictionary or None if not found
        """
        with self._lock:
            for query in self._read_file():
                if query.get("id") == query_id:
                    return query
            return None

    def create(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new saved query.

        Args:
            query: Saved query dictionary with id, name, jql, target_index
                and the compiled query document

        Returns:
            The created saved query with counters and timestamps added
        """
        with self._lock:
            queries = self._read_file()

            now = datetime.now(timezone.utc).isoformat()
            query.setdefault("tags", [])
            query["execution_count"] = 0
            query["last_executed_at"] = None
            query["created_at"] = now
            query["updated_at"] = now

            queries.append(query)
            self._write_file(queries)

        logger.info("Saved query %s (%s) created", query.get("id"), query.get("name"))
        return query

    def update(self, query_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update an existing saved query.

        Args:
            query_id: The saved query ID
            updates: Dictionary with fields to update

        Returns:
            The updated saved query or None if not found
        """
        with self._lock:
            queries = self._read_file()

            for query in queries:
                if query.get("id") == query_id:
                    for key, value in updates.items():
                        if key not in PROTECTED_FIELDS:
                            query[key] = value

                    query["updated_at"] = datetime.now(timezone.utc).isoformat()

                    self._write_file(queries)
                    return query

            return None

    def delete(self, query_id: str) -> bool:
        """Delete a saved query by ID.

        Returns:
            True if the query was deleted, False if not found
        """
        with self._lock:
            queries = self._read_file()
            original_len = len(queries)
            queries = [q for q in queries if q.get("id") != query_id]

            if len(queries) < original_len:
                self._write_file(queries)
                logger.info("Saved query %s deleted", query_id)
                return True

            return False

    def increment_execution_count(self, query_id: str) -> Optional[Dict[str, Any]]:
        """Record one execution of a saved query.

        Returns:
            The updated saved query or None if not found
        """
        with self._lock:
            queries = self._read_file()

            for query in queries:
                if query.get("id") == query_id:
                    query["execution_count"] = query.get("execution_count", 0) + 1
                    query["last_executed_at"] = datetime.now(timezone.utc).isoformat()
                    self._write_file(queries)
                    return query

            return None

    def to_join_source(self, query_id: str) -> JoinSource:
        """Build a join source from a saved query.

        Raises:
            SavedQueryNotFoundError: If the saved query does not exist
        """
        query = self.get_by_id(query_id)
        if query is None:
            raise SavedQueryNotFoundError(f"Saved query '{query_id}' not found")

        return JoinSource(
            type=SOURCE_SAVED_QUERY,
            id=query_id,
            name=query.get("name") or query_id,
            target_index=query.get("target_index"),
            query=query.get("query"),
        )
