"""
Search clients and the join source fetcher.

The fetcher never owns a connection: it is handed a search client, which is
either the Elasticsearch-backed client or a static in-memory client for
offline joins and tests.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from elasticsearch import Elasticsearch

from .errors import AccessDeniedError, JoinConfigurationError
from .models import SOURCE_INDEX, SOURCE_SAVED_QUERY, JoinSource
from .resolver import is_index_allowed


logger = logging.getLogger(__name__)

DEFAULT_FETCH_SIZE = 1000

IndexArg = Union[str, Sequence[str]]


@dataclass
class SearchResponse:
    """Normalized search response.

    Attributes:
        total: Total hit count reported by the engine
        hits: Raw hit dictionaries (_id, _index, _source)
        took: Engine-side time in milliseconds, when reported
        aggregations: Aggregation results, when requested
    """
    total: int
    hits: List[Dict[str, Any]] = field(default_factory=list)
    took: Optional[int] = None
    aggregations: Optional[Dict[str, Any]] = None


class SearchClient(Protocol):
    """Contract of the search execution collaborator."""

    def search(
        self,
        index: IndexArg,
        query: Dict[str, Any],
        from_: int = 0,
        size: int = 50,
        sort: Optional[List[Dict[str, Any]]] = None,
        source: Union[bool, List[str], None] = True,
    ) -> SearchResponse:
        ...

    def ping(self) -> bool:
        ...


def _index_list(index: IndexArg) -> List[str]:
    if isinstance(index, str):
        return [part.strip() for part in index.split(',') if part.strip()]
    return list(index)


def _operation_id() -> str:
    return uuid.uuid4().hex[:8]


class ElasticsearchSearchClient:
    """Search client backed by the official Elasticsearch client."""

    def __init__(self, client: Elasticsearch, allowed_indexes: List[str]):
        """Initialize the search client.

        Args:
            client: A configured Elasticsearch client
            allowed_indexes: Index names and wildcard patterns callers may query
        """
        self.client = client
        self.allowed_indexes = list(allowed_indexes)

    @classmethod
    def from_settings(cls, settings) -> 'ElasticsearchSearchClient':
        """Create a client from Settings. No connection is opened here."""
        options: Dict[str, Any] = {
            'request_timeout': settings.request_timeout,
            'max_retries': settings.max_retries,
        }
        if settings.es_username and settings.es_password:
            options['basic_auth'] = (settings.es_username, settings.es_password)
        if settings.es_ca_cert and Path(settings.es_ca_cert).exists():
            options['ca_certs'] = settings.es_ca_cert

        logger.info(
            "Elasticsearch configuration: host=%s auth=%s allowed_indexes=%s",
            settings.es_host, 'basic_auth' in options, settings.allowed_indexes,
        )
        return cls(Elasticsearch(settings.es_host, **options), settings.allowed_indexes)

    def validate_index_access(self, indexes: List[str]) -> None:
        """Raise AccessDeniedError for any index outside the allow-list."""
        for index in indexes:
            if not is_index_allowed(index, self.allowed_indexes):
                raise AccessDeniedError(f"Access denied to index: {index}")

    def search(
        self,
        index: IndexArg,
        query: Dict[str, Any],
        from_: int = 0,
        size: int = 50,
        sort: Optional[List[Dict[str, Any]]] = None,
        source: Union[bool, List[str], None] = True,
    ) -> SearchResponse:
        """Run one search request.

        Raises:
            AccessDeniedError: If an index is outside the allow-list
        """
        operation_id = _operation_id()
        indexes = _index_list(index)

        logger.info(
            "[ES-SEARCH-%s] Starting search on %s (from=%d, size=%d)",
            operation_id, indexes, from_, size,
        )
        self.validate_index_access(indexes)

        params: Dict[str, Any] = {
            'index': indexes,
            'query': query,
            'from_': from_,
            'size': size,
        }
        if sort:
            params['sort'] = sort
        if source is not None:
            params['source'] = source

        start_time = time.time()
        try:
            response = self.client.search(**params)
        except Exception as e:
            elapsed_ms = (time.time() - start_time) * 1000
            logger.error(
                "[ES-SEARCH-%s] Search failed after %.0fms: %s",
                operation_id, elapsed_ms, e,
            )
            raise

        body = getattr(response, 'body', response)
        hits = body['hits']
        total = hits.get('total', 0)
        if isinstance(total, dict):
            total = total.get('value', 0)

        logger.info(
            "[ES-SEARCH-%s] Search completed in %.0fms: %d total hit(s), %d returned",
            operation_id, (time.time() - start_time) * 1000, total, len(hits['hits']),
        )

        return SearchResponse(
            total=total,
            hits=list(hits['hits']),
            took=body.get('took'),
            aggregations=body.get('aggregations'),
        )

    def ping(self) -> bool:
        return bool(self.client.ping())


class StaticSearchClient:
    """Serves preloaded records per index without a search engine.

    Only match_all query documents are supported; records are returned in
    load order and paged with from_/size. Index arguments may use the same
    wildcard patterns as the allow-list.
    """

    def __init__(self, records_by_index: Dict[str, List[Dict[str, Any]]]):
        self.records_by_index = records_by_index

    def _hits_for(self, pattern: str) -> List[Dict[str, Any]]:
        hits = []
        for name, records in self.records_by_index.items():
            if not is_index_allowed(name, [pattern]):
                continue
            for position, record in enumerate(records):
                if '_source' in record:
                    hits.append(record)
                else:
                    hits.append({'_id': str(position), '_index': name, '_source': record})
        return hits

    def search(
        self,
        index: IndexArg,
        query: Dict[str, Any],
        from_: int = 0,
        size: int = 50,
        sort: Optional[List[Dict[str, Any]]] = None,
        source: Union[bool, List[str], None] = True,
    ) -> SearchResponse:
        if 'match_all' not in query:
            raise ValueError("StaticSearchClient only supports match_all queries")

        hits: List[Dict[str, Any]] = []
        for pattern in _index_list(index):
            hits.extend(self._hits_for(pattern))

        return SearchResponse(total=len(hits), hits=hits[from_:from_ + size], took=0)

    def ping(self) -> bool:
        return True


class SourceFetcher:
    """Retrieves the raw hits of one join source."""

    def __init__(self, client: SearchClient, default_size: int = DEFAULT_FETCH_SIZE):
        """Initialize the fetcher.

        Args:
            client: Search client used for every fetch
            default_size: Result cap when a join does not set a limit
        """
        self.client = client
        self.default_size = default_size

    def fetch(self, source: JoinSource, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Fetch the hits of an index or saved query source.

        Args:
            source: The join source
            limit: Optional result cap for this side

        Returns:
            Raw hit dictionaries

        Raises:
            JoinConfigurationError: If the source is incomplete or unknown
        """
        size = limit or self.default_size

        if source.type == SOURCE_INDEX:
            index = source.id
            query: Dict[str, Any] = {'match_all': {}}
        elif source.type == SOURCE_SAVED_QUERY:
            if not source.query or not source.target_index:
                raise JoinConfigurationError(
                    f"Invalid saved query source: missing query or targetIndex for {source.label}",
                    code='INVALID_JOIN_SOURCE',
                )
            index = source.target_index
            query = source.query
            logger.info(
                "Executing saved query %s against %s", source.label, source.target_index,
            )
        else:
            raise JoinConfigurationError(
                f"Unknown source type: {source.type}", code='INVALID_JOIN_SOURCE',
            )

        response = self.client.search(index, query, from_=0, size=size, source=True)
        return response.hits
