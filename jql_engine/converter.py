"""
JQL conversion facade bound to one allow-list and project mapping.
"""

import logging
from typing import Dict, List, Optional

from .compiler import build_sort_clause, compile_query
from .models import CompiledQuery, ParsedQuery, ValidationResult
from .parser import parse_jql
from .resolver import resolve_indexes
from .validator import validate_jql


logger = logging.getLogger(__name__)


class JQLConverter:
    """Converts JQL strings into Elasticsearch queries."""

    def __init__(
        self,
        allowed_indexes: List[str],
        project_index_map: Optional[Dict[str, str]] = None,
    ):
        """Initialize the converter.

        Args:
            allowed_indexes: Allow-list of index names and wildcard patterns
            project_index_map: Lowercase project name to index name
        """
        self.allowed_indexes = list(allowed_indexes)
        self.project_index_map = dict(project_index_map or {})

    def parse(self, jql: str) -> ParsedQuery:
        return parse_jql(jql)

    def convert(self, jql: str) -> CompiledQuery:
        """Parse, compile and resolve a JQL string.

        Args:
            jql: The JQL string

        Returns:
            CompiledQuery with the query document, indexes and sort clause
        """
        parsed = parse_jql(jql)
        compiled = CompiledQuery(
            query=compile_query(parsed),
            indexes=resolve_indexes(parsed.projects, self.allowed_indexes, self.project_index_map),
            sort=build_sort_clause(parsed),
            limit=parsed.limit,
        )

        logger.debug(
            "Converted JQL %r: %d condition(s), indexes=%s",
            jql, len(parsed.conditions), compiled.indexes,
        )
        return compiled

    def validate(self, jql: str) -> ValidationResult:
        return validate_jql(jql, self.allowed_indexes, self.project_index_map)
