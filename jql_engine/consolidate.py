"""
Record consolidation helpers for the join engine.

Covers dotted field path lookup, join key stringification, source-qualified
field prefixes, flattening of a joined pair into one record, and the join key
frequency table returned alongside join results.
"""

import json
from collections import Counter
from typing import Any, Dict, Iterable, Optional, Tuple

from .models import JoinedRecord, JoinSource


JOIN_KEY_FIELD = '_join_key'


def extract_field(record: Optional[Dict[str, Any]], field_path: str) -> Optional[Any]:
    """Get a field value from a record, supporting dotted field paths.

    Args:
        record: Record dictionary (may be None)
        field_path: Field path (e.g., 'patient.id', 'region')

    Returns:
        Field value or None if not found
    """
    if record is None:
        return None

    current: Any = record
    for part in field_path.split('.'):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None

    return current


def join_key_string(value: Any) -> str:
    """Stringify a join value so equal values from both sides share a key.

    Booleans are lowercased, integral floats lose their fractional part
    (so 7 and 7.0 match), lists are comma-joined and mappings become
    key-sorted JSON.
    """
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ','.join(join_key_string(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def source_prefixes(left: JoinSource, right: JoinSource) -> Tuple[str, str]:
    """Return the field prefixes for the left and right sources.

    When one label prefix starts with the other (a self-join, or labels like
    'health' and 'health_visits'), fields of the two sides could collide,
    so both prefixes are qualified with the side name.
    """
    left_prefix = f"{left.label}_"
    right_prefix = f"{right.label}_"
    if left_prefix.startswith(right_prefix) or right_prefix.startswith(left_prefix):
        return f"left_{left.label}_", f"right_{right.label}_"
    return left_prefix, right_prefix


def consolidate_record(
    left_record: Optional[Dict[str, Any]],
    right_record: Optional[Dict[str, Any]],
    left_prefix: str,
    right_prefix: str,
    join_value: Any,
) -> Dict[str, Any]:
    """Merge a joined pair into one flat record.

    Args:
        left_record: Left source document, or None for right-only rows
        right_record: Right source document, or None for left-only rows
        left_prefix: Prefix for left field names
        right_prefix: Prefix for right field names
        join_value: Raw join value stored under the top-level join key field

    Returns:
        The consolidated record; a missing side contributes no fields
    """
    consolidated: Dict[str, Any] = {}

    if left_record:
        for key, value in left_record.items():
            consolidated[f"{left_prefix}{key}"] = value

    if right_record:
        for key, value in right_record.items():
            consolidated[f"{right_prefix}{key}"] = value

    consolidated[JOIN_KEY_FIELD] = join_value
    return consolidated


def strip_prefix(consolidated: Dict[str, Any], prefix: str) -> Dict[str, Any]:
    """Read one side's fields back out of a consolidated record."""
    return {
        key[len(prefix):]: value
        for key, value in consolidated.items()
        if key.startswith(prefix)
    }


def join_key_distribution(results: Iterable[JoinedRecord], top_n: int = 10) -> Dict[str, Any]:
    """Count join keys across joined records.

    Args:
        results: Joined records
        top_n: Number of most frequent keys to keep

    Returns:
        Dictionary with the number of distinct keys and the top keys by
        count; ties are ordered by key string
    """
    counts = Counter(record.join_key or 'null' for record in results)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))

    return {
        'total_unique_keys': len(counts),
        'distribution': dict(ranked[:top_n]),
    }
