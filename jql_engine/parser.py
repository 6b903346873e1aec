"""
JQL tokenizer and condition builder.

Splits a JQL string into one unambiguous token stream, then walks it once to
collect the project clause, field conditions, ORDER BY keys and LIMIT.
Parsing never fails: fragments that fit no clause are skipped silently.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .models import FilterCondition, Operator, OrderBy, ParsedQuery


KEYWORDS = {
    'and': 'AND',
    'or': 'OR',
    'not': 'NOT',
    'in': 'IN',
    'is': 'IS',
    'null': 'NULL',
    'order': 'ORDER',
    'by': 'BY',
    'limit': 'LIMIT',
    'asc': 'ASC',
    'desc': 'DESC',
}

# Token types usable as a literal value on the right-hand side
VALUE_TYPES = {'WORD', 'STRING'} | set(KEYWORDS.values())

# Surface operators the builder turns into conditions. NOT_TILDE, GT, LT,
# GTE and LTE are tokenized so they never bleed into words, but no clause
# consumes them yet.
COMPARISON_OPERATORS = {
    'EQ': Operator.EQUALS,
    'NEQ': Operator.NOT_EQUALS,
    'TILDE': Operator.CONTAINS,
}


@dataclass
class Token:
    """Represents a lexical token."""
    type: str
    value: str
    position: int


class Tokenizer:
    """Tokenizes JQL strings."""

    TOKEN_PATTERNS = [
        (re.compile(r'"[^"]*"'), 'STRING'),
        (re.compile(r"'[^']*'"), 'STRING'),
        (re.compile(r'!='), 'NEQ'),
        (re.compile(r'!~'), 'NOT_TILDE'),
        (re.compile(r'>='), 'GTE'),
        (re.compile(r'<='), 'LTE'),
        (re.compile(r'='), 'EQ'),
        (re.compile(r'~'), 'TILDE'),
        (re.compile(r'>'), 'GT'),
        (re.compile(r'<'), 'LT'),
        (re.compile(r'\('), 'LPAREN'),
        (re.compile(r'\)'), 'RPAREN'),
        (re.compile(r','), 'COMMA'),
        (re.compile(r'[^\s"\'(),=!~<>]+'), 'WORD'),
        (re.compile(r'\s+'), 'WHITESPACE'),
    ]

    def __init__(self, query: str):
        """Initialize tokenizer with a query string."""
        self.query = query
        self.position = 0
        self.tokens: List[Token] = []
        self._tokenize()

    def _tokenize(self) -> None:
        """Tokenize the input query.

        A character no pattern accepts (a stray '!' or an unterminated
        quote) becomes a single UNKNOWN token.
        """
        while self.position < len(self.query):
            for pattern, token_type in self.TOKEN_PATTERNS:
                match = pattern.match(self.query, self.position)
                if match:
                    value = match.group(0)
                    if token_type == 'WORD':
                        token_type = KEYWORDS.get(value.lower(), 'WORD')
                    if token_type != 'WHITESPACE':
                        self.tokens.append(Token(token_type, value, self.position))
                    self.position = match.end()
                    break
            else:
                self.tokens.append(
                    Token('UNKNOWN', self.query[self.position], self.position)
                )
                self.position += 1

    def get_tokens(self) -> List[Token]:
        """Return the list of tokens."""
        return self.tokens


def _literal(token: Token) -> str:
    """Return a token's text with surrounding quotes removed."""
    if token.type == 'STRING':
        return token.value[1:-1]
    return token.value


class ConditionBuilder:
    """Builds a ParsedQuery from JQL tokens in a single pass."""

    def __init__(self, tokens: List[Token]):
        """Initialize builder with a list of tokens."""
        self.tokens = tokens
        self.position = 0
        self.projects: List[str] = []
        self.conditions: List[FilterCondition] = []
        self.order_by: List[OrderBy] = []
        self.limit: Optional[int] = None

    def _current_token(self) -> Optional[Token]:
        """Get the current token."""
        return self._peek_token(0)

    def _peek_token(self, offset: int = 1) -> Optional[Token]:
        """Peek at a future token."""
        pos = self.position + offset
        if pos < len(self.tokens):
            return self.tokens[pos]
        return None

    def _peek_type(self, offset: int = 1) -> Optional[str]:
        token = self._peek_token(offset)
        return token.type if token else None

    def build(self) -> ParsedQuery:
        """Consume every token and return the parsed query."""
        while self._current_token() is not None:
            if not self._parse_clause():
                # Unrecognized fragment; drop one token and resynchronize
                self.position += 1

        return ParsedQuery(
            projects=tuple(self.projects),
            conditions=tuple(self.conditions),
            order_by=tuple(self.order_by),
            limit=self.limit,
        )

    def _parse_clause(self) -> bool:
        """Try every clause at the current position.

        Returns:
            True if a clause was consumed, False otherwise
        """
        current = self._current_token()

        if current.type == 'ORDER' and self._parse_order_by():
            return True
        if current.type == 'LIMIT' and self._parse_limit():
            return True
        if current.type == 'WORD':
            return self._parse_condition()
        # A keyword directly followed by a comparison is a field name
        if current.type in KEYWORDS.values() and self._peek_type(1) in COMPARISON_OPERATORS:
            return self._parse_condition()
        return False

    def _parse_condition(self) -> bool:
        """Parse '<field> <op> <value>' or '<field> in (<values>)'."""
        field_name = self._current_token().value
        operator_type = self._peek_type(1)

        if operator_type in COMPARISON_OPERATORS:
            value_token = self._peek_token(2)
            if value_token is None or value_token.type not in VALUE_TYPES:
                return False
            self.position += 3
            value = _literal(value_token)

            if operator_type == 'EQ' and field_name.lower() == 'project':
                # Only the first project clause selects the index
                if not self.projects:
                    self.projects.append(value)
                return True

            self.conditions.append(
                FilterCondition(
                    field=field_name,
                    operator=COMPARISON_OPERATORS[operator_type],
                    value=value,
                )
            )
            return True

        if operator_type == 'IN' and self._peek_type(2) == 'LPAREN':
            values = self._parse_value_list(self.position + 3)
            if values is None:
                return False
            self.conditions.append(
                FilterCondition(field=field_name, operator=Operator.IN, value=values)
            )
            return True

        return False

    def _parse_value_list(self, start: int) -> Optional[Tuple[str, ...]]:
        """Collect comma-separated values up to the closing parenthesis.

        Args:
            start: Index of the first token after '('

        Returns:
            Trimmed, unquoted values, or None when ')' is missing
        """
        values: List[str] = []
        segment: List[str] = []

        for pos in range(start, len(self.tokens)):
            token = self.tokens[pos]
            if token.type == 'RPAREN':
                values.append(' '.join(segment))
                self.position = pos + 1
                return tuple(value.strip() for value in values if value.strip())
            if token.type == 'COMMA':
                values.append(' '.join(segment))
                segment = []
            elif token.type in VALUE_TYPES:
                segment.append(_literal(token))

        return None

    def _parse_order_by(self) -> bool:
        """Parse 'order by <field> [asc|desc] [, ...]'."""
        if self._peek_type(1) != 'BY' or self._peek_type(2) != 'WORD':
            return False
        self.position += 2

        while self._current_token() and self._current_token().type == 'WORD':
            field_name = self._current_token().value
            self.position += 1

            direction = 'asc'
            if self._current_token() and self._current_token().type in ('ASC', 'DESC'):
                direction = self._current_token().type.lower()
                self.position += 1

            self.order_by.append(OrderBy(field=field_name, direction=direction))

            if self._current_token() and self._current_token().type == 'COMMA':
                self.position += 1
            else:
                break

        return True

    def _parse_limit(self) -> bool:
        """Parse 'limit <integer>'."""
        value_token = self._peek_token(1)
        if value_token is None or value_token.type != 'WORD' or not value_token.value.isdecimal():
            return False
        self.position += 2

        if self.limit is None:
            self.limit = int(value_token.value)
        return True


def parse_jql(query: Optional[str]) -> ParsedQuery:
    """Parse a JQL string.

    Args:
        query: The JQL string; None is treated as empty

    Returns:
        The parsed query. Malformed fragments are dropped, never raised.
    """
    tokenizer = Tokenizer((query or '').strip())
    builder = ConditionBuilder(tokenizer.get_tokens())
    return builder.build()
