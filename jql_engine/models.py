"""
Data models for the JQL engine.

Defines dataclasses for filter conditions, parsed and compiled queries,
validation results, join sources and specifications, and the joined records
and summary statistics produced by the join engine.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class Operator(str, Enum):
    """Comparison operators a filter condition can carry."""
    EQUALS = 'equals'
    NOT_EQUALS = 'not_equals'
    CONTAINS = 'contains'
    NOT_CONTAINS = 'not_contains'
    IN = 'in'
    NOT_IN = 'not_in'
    GREATER_THAN = 'greater_than'
    LESS_THAN = 'less_than'
    IS_NULL = 'is_null'
    IS_NOT_NULL = 'is_not_null'


LIST_OPERATORS = (Operator.IN, Operator.NOT_IN)

JOIN_TYPES = ('inner', 'left', 'right', 'full')

SOURCE_INDEX = 'index'
SOURCE_SAVED_QUERY = 'savedQuery'

MATCHED = 'matched'
LEFT_ONLY = 'left_only'
RIGHT_ONLY = 'right_only'


@dataclass(frozen=True)
class FilterCondition:
    """A single field condition extracted from a JQL string.

    Attributes:
        field: The field name (e.g., 'status', 'patient.region')
        operator: The comparison operator
        value: A string, a tuple of strings for in/not_in, or None for
            the null checks. Lists are stored as tuples.
    """
    field: str
    operator: Operator
    value: Union[str, Tuple[str, ...], None] = None

    def __post_init__(self):
        if isinstance(self.value, list):
            object.__setattr__(self, 'value', tuple(self.value))

    @property
    def values(self) -> List[str]:
        """Return the value as a list (empty when there is none)."""
        if self.value is None:
            return []
        if isinstance(self.value, (list, tuple)):
            return list(self.value)
        return [self.value]


@dataclass(frozen=True)
class OrderBy:
    """One sort key of an ORDER BY clause."""
    field: str
    direction: str = 'asc'


@dataclass(frozen=True)
class ParsedQuery:
    """Structured form of a JQL string.

    Attributes:
        projects: Logical project names (at most one from the grammar)
        conditions: Field conditions, combined with AND logic
        order_by: Sort keys in priority order
        limit: Optional row limit
    """
    projects: Tuple[str, ...] = ()
    conditions: Tuple[FilterCondition, ...] = ()
    order_by: Tuple[OrderBy, ...] = ()
    limit: Optional[int] = None


@dataclass
class CompiledQuery:
    """Elasticsearch translation of a JQL string.

    Attributes:
        query: The query DSL document (bool or match_all)
        indexes: Concrete index names the query may run against
        sort: Optional list of sort descriptors
        limit: Optional row limit carried over from the JQL
    """
    query: Dict[str, Any]
    indexes: List[str]
    sort: Optional[List[Dict[str, Any]]] = None
    limit: Optional[int] = None


@dataclass
class ValidationResult:
    """Outcome of validating a JQL string without executing it."""
    is_valid: bool
    errors: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class JoinSource:
    """One side of a join: a direct index or a saved query.

    Attributes:
        type: 'index' or 'savedQuery'
        id: Index name, or saved query identifier
        name: Display name; defaults to the id
        target_index: Index a saved query runs against
        query: Compiled query document of a saved query
    """
    type: str
    id: str
    name: Optional[str] = None
    target_index: Optional[str] = None
    query: Optional[Dict[str, Any]] = None

    @property
    def label(self) -> str:
        """Name used to qualify this source's fields and log lines."""
        if self.type == SOURCE_INDEX:
            return self.id
        return self.name or self.id

    def describe(self) -> str:
        if self.type == SOURCE_INDEX:
            return self.id
        return f"savedQuery:{self.label}"


@dataclass
class JoinSpec:
    """Configuration of a single join between two sources."""
    left: JoinSource
    right: JoinSource
    left_field: str
    right_field: str
    join_type: str = 'inner'
    limit: Optional[int] = None


@dataclass
class JoinedRecord:
    """One row emitted by the join engine.

    Attributes:
        join_key: Stringified join value shared by both sides
        consolidated_record: Flat merge of the present sides
        match_kind: 'matched', 'left_only' or 'right_only'
        left_record: Source document of the left hit, if any
        right_record: Source document of the right hit, if any
    """
    join_key: str
    consolidated_record: Dict[str, Any]
    match_kind: str
    left_record: Optional[Dict[str, Any]] = None
    right_record: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the record to a dictionary."""
        data: Dict[str, Any] = {
            'join_key': self.join_key,
            'consolidated_record': self.consolidated_record,
            'match_kind': self.match_kind,
        }
        if self.left_record is not None:
            data['left_record'] = self.left_record
        if self.right_record is not None:
            data['right_record'] = self.right_record
        return data


@dataclass
class JoinSummary:
    """Counters describing one join request.

    Attributes:
        left_total: Hits fetched from the left source
        right_total: Hits fetched from the right source
        matched: Emitted records with both sides present
        left_only: Emitted records with only the left side
        right_only: Emitted records with only the right side
        left_excluded: Left hits dropped for a null or missing join value
        right_excluded: Right hits dropped for a null or missing join value
    """
    left_total: int = 0
    right_total: int = 0
    matched: int = 0
    left_only: int = 0
    right_only: int = 0
    left_excluded: int = 0
    right_excluded: int = 0

    @property
    def total_emitted(self) -> int:
        return self.matched + self.left_only + self.right_only

    def to_dict(self) -> Dict[str, int]:
        """Convert the summary to a dictionary."""
        return {
            'left_total': self.left_total,
            'right_total': self.right_total,
            'matched': self.matched,
            'left_only': self.left_only,
            'right_only': self.right_only,
            'left_excluded': self.left_excluded,
            'right_excluded': self.right_excluded,
        }


@dataclass
class JoinResult:
    """Paginated result of a join request.

    Attributes:
        took_ms: Wall time of the whole request in milliseconds
        total_results: Number of joined records before pagination
        summary: Join counters
        results: The requested page of joined records
        distribution: Top join keys by frequency
        index_distribution: Fetched/joined counts per side
    """
    took_ms: float
    total_results: int
    summary: JoinSummary
    results: List[JoinedRecord]
    distribution: Dict[str, Any] = field(default_factory=dict)
    index_distribution: Dict[str, int] = field(default_factory=dict)
