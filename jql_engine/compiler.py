"""
Translation of parsed JQL into Elasticsearch query DSL.

Positive conditions accumulate into a bool query's ``must`` branch and
negative conditions into ``must_not``. A query without usable clauses
compiles to ``match_all``.
"""

from typing import Any, Dict, List, Optional, Tuple

from .models import FilterCondition, Operator, ParsedQuery


# Sub-field holding the untokenized variant of a text field
KEYWORD_SUFFIX = '.keyword'


def keyword_field(field_name: str) -> str:
    """Return the exact-match variant of a field name."""
    return f"{field_name}{KEYWORD_SUFFIX}"


def compile_condition(condition: FilterCondition) -> Optional[Tuple[bool, Dict[str, Any]]]:
    """Translate one condition into a query clause.

    Args:
        condition: The condition to translate

    Returns:
        A (negated, clause) tuple, or None when the condition yields no
        clause (an in/not_in condition without values)
    """
    operator = condition.operator
    field_name = condition.field

    if operator in (Operator.EQUALS, Operator.NOT_EQUALS):
        clause = {'term': {keyword_field(field_name): condition.value}}
        return operator == Operator.NOT_EQUALS, clause

    if operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        clause = {'match': {field_name: condition.value}}
        return operator == Operator.NOT_CONTAINS, clause

    if operator in (Operator.IN, Operator.NOT_IN):
        values = condition.values
        if not values:
            return None
        clause = {'terms': {keyword_field(field_name): values}}
        return operator == Operator.NOT_IN, clause

    if operator == Operator.GREATER_THAN:
        return False, {'range': {field_name: {'gt': condition.value}}}

    if operator == Operator.LESS_THAN:
        return False, {'range': {field_name: {'lt': condition.value}}}

    if operator in (Operator.IS_NULL, Operator.IS_NOT_NULL):
        clause = {'exists': {'field': field_name}}
        return operator == Operator.IS_NULL, clause

    raise ValueError(f"Unknown operator: {operator}")


def compile_query(parsed: ParsedQuery) -> Dict[str, Any]:
    """Build the Elasticsearch query document for a parsed query.

    Args:
        parsed: Parsed JQL

    Returns:
        A bool query with must/must_not branches, or match_all when no
        condition produced a clause
    """
    must: List[Dict[str, Any]] = []
    must_not: List[Dict[str, Any]] = []

    for condition in parsed.conditions:
        compiled = compile_condition(condition)
        if compiled is None:
            continue
        negated, clause = compiled
        if negated:
            must_not.append(clause)
        else:
            must.append(clause)

    if not must and not must_not:
        return {'match_all': {}}

    bool_query: Dict[str, Any] = {}
    if must:
        bool_query['must'] = must
    if must_not:
        bool_query['must_not'] = must_not

    return {'bool': bool_query}


def build_sort_clause(parsed: ParsedQuery) -> Optional[List[Dict[str, Any]]]:
    """Build the sort clause for a parsed query.

    Returns:
        One descriptor per ORDER BY key, or None to keep the engine's
        default ordering
    """
    if not parsed.order_by:
        return None

    return [
        {keyword_field(order.field): {'order': order.direction}}
        for order in parsed.order_by
    ]
