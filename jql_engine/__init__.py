"""
JQL Engine Package.

Translates a small JQL dialect into Elasticsearch queries and joins records
from two independently fetched sources in memory.
"""

from .converter import JQLConverter
from .join import JoinEngine
from .models import (
    CompiledQuery,
    FilterCondition,
    JoinedRecord,
    JoinResult,
    JoinSource,
    JoinSpec,
    JoinSummary,
    Operator,
    OrderBy,
    ParsedQuery,
    ValidationResult,
)
from .parser import parse_jql

__all__ = [
    'CompiledQuery',
    'FilterCondition',
    'JQLConverter',
    'JoinEngine',
    'JoinedRecord',
    'JoinResult',
    'JoinSource',
    'JoinSpec',
    'JoinSummary',
    'Operator',
    'OrderBy',
    'ParsedQuery',
    'ValidationResult',
    'parse_jql',
]
