"""
Validation of JQL strings without compiling or executing them.
"""

from typing import Dict, List, Optional

from .models import Operator, ValidationResult
from .parser import parse_jql
from .resolver import resolve_indexes


def validate_jql(
    query: Optional[str],
    allowed: List[str],
    project_index_map: Optional[Dict[str, str]] = None,
) -> ValidationResult:
    """Validate a JQL string against an allow-list.

    Args:
        query: The JQL string
        allowed: Allow-list of index names and wildcard patterns
        project_index_map: Lowercase project name to index name

    Returns:
        ValidationResult with errors and warnings. Resolving to zero
        indexes is a warning only: such a query runs and returns nothing.
    """
    errors: List[Dict[str, str]] = []
    warnings: List[str] = []

    if not query or not query.strip():
        errors.append({'field': 'jql', 'message': 'JQL query cannot be empty'})
        return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

    parsed = parse_jql(query)

    indexes = resolve_indexes(parsed.projects, allowed, project_index_map)
    if not indexes:
        warnings.append('No valid indexes found for the specified projects')

    for condition in parsed.conditions:
        if not condition.field:
            errors.append({'field': 'condition', 'message': 'Field name is required'})
        if condition.operator == Operator.IN and not condition.values:
            errors.append({
                'field': 'condition',
                'message': 'IN operator requires at least one value',
            })

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
