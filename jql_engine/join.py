"""
In-memory join engine for two independently fetched sources.

A join request runs FETCH_LEFT -> FETCH_RIGHT -> BUILD_LOOKUPS -> EMIT_PAIRS
-> SUMMARIZE -> PAGINATE. Nothing is retried: a configuration error stops the
request before any fetch, and a fetch error aborts it with no partial result.
The whole join is materialized before the requested page is sliced out.
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .consolidate import (
    consolidate_record,
    extract_field,
    join_key_distribution,
    join_key_string,
    source_prefixes,
)
from .errors import JoinConfigurationError
from .models import (
    JOIN_TYPES,
    LEFT_ONLY,
    MATCHED,
    RIGHT_ONLY,
    SOURCE_INDEX,
    SOURCE_SAVED_QUERY,
    JoinedRecord,
    JoinResult,
    JoinSource,
    JoinSpec,
    JoinSummary,
)
from .sources import SourceFetcher


logger = logging.getLogger(__name__)

Lookup = Dict[str, List[Dict[str, Any]]]


def build_lookup(hits: List[Dict[str, Any]], field_path: str) -> Tuple[Lookup, int]:
    """Group hit documents by their stringified join value.

    Args:
        hits: Raw hits with a '_source' document
        field_path: Dotted path of the join field

    Returns:
        The lookup table and the number of hits dropped because the join
        value was null or missing. Dropped hits never match and are never
        emitted as unmatched rows.
    """
    lookup: Lookup = {}
    excluded = 0

    for hit in hits:
        document = hit.get('_source') or {}
        value = extract_field(document, field_path)
        if value is None:
            excluded += 1
            continue
        lookup.setdefault(join_key_string(value), []).append(document)

    return lookup, excluded


def _ordered_keys(left_lookup: Lookup, right_lookup: Lookup, join_type: str) -> List[str]:
    if join_type == 'inner':
        return [key for key in left_lookup if key in right_lookup]
    if join_type == 'left':
        return list(left_lookup)
    if join_type == 'right':
        return list(right_lookup)
    return list(left_lookup) + [key for key in right_lookup if key not in left_lookup]


def emit_pairs(
    left_lookup: Lookup,
    right_lookup: Lookup,
    join_type: str,
    left_field: str,
    right_field: str,
    left_prefix: str,
    right_prefix: str,
    max_pairs_per_key: Optional[int] = None,
) -> List[JoinedRecord]:
    """Emit joined records for every key the join type selects.

    Keys present on both sides emit the full cross product of their left
    and right documents. Keys present on one side emit each document once
    as left_only or right_only.

    Args:
        left_lookup: Left documents grouped by join key
        right_lookup: Right documents grouped by join key
        join_type: One of inner, left, right, full
        left_field: Join field path on the left side
        right_field: Join field path on the right side
        left_prefix: Field prefix for left documents
        right_prefix: Field prefix for right documents
        max_pairs_per_key: Optional cap on matched pairs per key

    Returns:
        Joined records in key order
    """
    results: List[JoinedRecord] = []

    for key in _ordered_keys(left_lookup, right_lookup, join_type):
        left_documents = left_lookup.get(key, [])
        right_documents = right_lookup.get(key, [])

        if not left_documents:
            for right in right_documents:
                results.append(JoinedRecord(
                    join_key=key,
                    consolidated_record=consolidate_record(
                        None, right, left_prefix, right_prefix,
                        extract_field(right, right_field),
                    ),
                    match_kind=RIGHT_ONLY,
                    right_record=right,
                ))
        elif not right_documents:
            for left in left_documents:
                results.append(JoinedRecord(
                    join_key=key,
                    consolidated_record=consolidate_record(
                        left, None, left_prefix, right_prefix,
                        extract_field(left, left_field),
                    ),
                    match_kind=LEFT_ONLY,
                    left_record=left,
                ))
        else:
            pairs = 0
            possible = len(left_documents) * len(right_documents)
            for left in left_documents:
                for right in right_documents:
                    if max_pairs_per_key is not None and pairs >= max_pairs_per_key:
                        break
                    results.append(JoinedRecord(
                        join_key=key,
                        consolidated_record=consolidate_record(
                            left, right, left_prefix, right_prefix,
                            extract_field(left, left_field),
                        ),
                        match_kind=MATCHED,
                        left_record=left,
                        right_record=right,
                    ))
                    pairs += 1
            if pairs < possible:
                logger.warning(
                    "Join key %r truncated to %d of %d matched pairs",
                    key, pairs, possible,
                )

    return results


def summarize(
    results: List[JoinedRecord],
    left_total: int,
    right_total: int,
    left_excluded: int = 0,
    right_excluded: int = 0,
) -> JoinSummary:
    """Count fetched hits and emitted records per match kind."""
    summary = JoinSummary(
        left_total=left_total,
        right_total=right_total,
        left_excluded=left_excluded,
        right_excluded=right_excluded,
    )
    for record in results:
        if record.match_kind == MATCHED:
            summary.matched += 1
        elif record.match_kind == LEFT_ONLY:
            summary.left_only += 1
        elif record.match_kind == RIGHT_ONLY:
            summary.right_only += 1
    return summary


def paginate(results: List[JoinedRecord], from_: int, size: int) -> List[JoinedRecord]:
    """Return results[from_:from_ + size] as a new list.

    Raises:
        ValueError: If from_ or size is negative
    """
    if from_ < 0 or size < 0:
        raise ValueError("from and size must be non-negative")
    return results[from_:from_ + size]


class JoinEngine:
    """Executes single joins between two sources."""

    def __init__(self, fetcher: SourceFetcher, max_pairs_per_key: Optional[int] = None):
        """Initialize the join engine.

        Args:
            fetcher: Source fetcher wrapping the search client
            max_pairs_per_key: Optional cap on matched pairs per join key;
                None keeps the full cross product
        """
        self.fetcher = fetcher
        self.max_pairs_per_key = max_pairs_per_key

    def validate_spec(self, spec: JoinSpec) -> None:
        """Reject a malformed join before any fetch happens.

        Raises:
            JoinConfigurationError: On an unsupported join type, a missing
                join field, an invalid limit or an incomplete source
        """
        if spec.join_type not in JOIN_TYPES:
            raise JoinConfigurationError(
                f"joinType must be one of: {', '.join(JOIN_TYPES)}",
                code='INVALID_JOIN_TYPE',
            )

        if not spec.left_field or not spec.right_field:
            raise JoinConfigurationError(
                "Both leftField and rightField are required",
                code='INVALID_JOIN_FIELD',
            )

        if spec.limit is not None and spec.limit < 0:
            raise JoinConfigurationError(
                "limit must be a non-negative number", code='INVALID_JOIN_LIMIT',
            )

        for side, source in (('left', spec.left), ('right', spec.right)):
            self._validate_source(side, source)

    @staticmethod
    def _validate_source(side: str, source: JoinSource) -> None:
        if source.type == SOURCE_INDEX:
            if not source.id:
                raise JoinConfigurationError(
                    f"{side} index source requires an index name",
                    code='INVALID_JOIN_SOURCE',
                )
        elif source.type == SOURCE_SAVED_QUERY:
            if not source.query or not source.target_index:
                raise JoinConfigurationError(
                    f"Invalid saved query source: missing query or targetIndex for {source.label}",
                    code='INVALID_JOIN_SOURCE',
                )
        else:
            raise JoinConfigurationError(
                f"Unknown source type: {source.type}", code='INVALID_JOIN_SOURCE',
            )

    def join(self, spec: JoinSpec, operation_id: Optional[str] = None) -> Tuple[List[JoinedRecord], JoinSummary]:
        """Fetch both sides and compute the full, unpaginated join.

        Args:
            spec: Join specification
            operation_id: Identifier used in log lines

        Returns:
            All joined records and the join summary
        """
        operation_id = operation_id or uuid.uuid4().hex[:8]
        self.validate_spec(spec)

        logger.info(
            "[JOIN-%s] Executing %s join %s.%s = %s.%s",
            operation_id, spec.join_type, spec.left.describe(), spec.left_field,
            spec.right.describe(), spec.right_field,
        )

        start_time = time.time()
        left_hits = self.fetcher.fetch(spec.left, spec.limit)
        logger.info(
            "[JOIN-%s] Left source %s returned %d hit(s) in %.0fms",
            operation_id, spec.left.describe(), len(left_hits), (time.time() - start_time) * 1000,
        )

        start_time = time.time()
        right_hits = self.fetcher.fetch(spec.right, spec.limit)
        logger.info(
            "[JOIN-%s] Right source %s returned %d hit(s) in %.0fms",
            operation_id, spec.right.describe(), len(right_hits), (time.time() - start_time) * 1000,
        )

        start_time = time.time()
        left_lookup, left_excluded = build_lookup(left_hits, spec.left_field)
        right_lookup, right_excluded = build_lookup(right_hits, spec.right_field)

        left_prefix, right_prefix = source_prefixes(spec.left, spec.right)
        results = emit_pairs(
            left_lookup,
            right_lookup,
            spec.join_type,
            spec.left_field,
            spec.right_field,
            left_prefix,
            right_prefix,
            max_pairs_per_key=self.max_pairs_per_key,
        )

        summary = summarize(
            results, len(left_hits), len(right_hits), left_excluded, right_excluded,
        )
        logger.info(
            "[JOIN-%s] Join processing completed in %.0fms: %s",
            operation_id, (time.time() - start_time) * 1000, summary.to_dict(),
        )
        return results, summary

    def execute(self, spec: JoinSpec, from_: int = 0, size: int = 100) -> JoinResult:
        """Execute a join and return one page of it.

        Args:
            spec: Join specification
            from_: Offset of the first record to return
            size: Maximum number of records to return

        Returns:
            JoinResult with the page, summary and key distribution
        """
        operation_id = uuid.uuid4().hex[:8]
        start_time = time.time()

        logger.info(
            "[JOIN-%s] Starting join operation (from=%d, size=%d)",
            operation_id, from_, size,
        )

        try:
            results, summary = self.join(spec, operation_id)
        except Exception as e:
            logger.error(
                "[JOIN-%s] Join failed after %.0fms: %s",
                operation_id, (time.time() - start_time) * 1000, e,
            )
            raise

        page = paginate(results, from_, size)
        took_ms = (time.time() - start_time) * 1000

        logger.info(
            "[JOIN-%s] Join completed in %.0fms: %d result(s), %d returned",
            operation_id, took_ms, len(results), len(page),
        )

        return JoinResult(
            took_ms=took_ms,
            total_results=len(results),
            summary=summary,
            results=page,
            distribution=join_key_distribution(results),
            index_distribution={
                'left': summary.left_total,
                'right': summary.right_total,
                'joined': summary.matched,
            },
        )

    def preview(
        self,
        left_index: str,
        right_index: str,
        left_field: str,
        right_field: str,
    ) -> Dict[str, Any]:
        """Run a small inner join to help configure a join.

        Returns:
            Up to three sample records, the summary, the number of possible
            matches and the sample join key distribution
        """
        spec = JoinSpec(
            left=JoinSource(type=SOURCE_INDEX, id=left_index),
            right=JoinSource(type=SOURCE_INDEX, id=right_index),
            left_field=left_field,
            right_field=right_field,
            join_type='inner',
            limit=10,
        )
        result = self.execute(spec, from_=0, size=5)

        return {
            'preview': result.results[:3],
            'join_summary': result.summary,
            'possible_matches': result.total_results,
            'sample_join_keys': result.distribution.get('distribution', {}),
        }
