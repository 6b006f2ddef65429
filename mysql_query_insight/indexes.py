"""
Index advice: redundant index detection and covering index suggestions.

Suggestions are DDL text for a human to review; nothing here executes DDL.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .digest import _TOKEN, _replace_token, extract_tables, statement_type

MAX_IDENTIFIER_LENGTH = 64

_IGNORED_INDEX_TYPES = ('FULLTEXT', 'SPATIAL')

_COLUMN = r'(?:\w+\.)?(\w+)'
_EQUALITY = re.compile(rf'^{_COLUMN}\s*(?:=|<=>)\s*\?$|^{_COLUMN}\s+is\s+null$|^{_COLUMN}\s+in\s*\(.*\)$')
_RANGE = re.compile(rf'^{_COLUMN}\s*(?:<|>|<=|>=)\s*\?$|^{_COLUMN}\s+between\s+\?$')
_REVERSED_RANGE = re.compile(rf'^\?\s*(?:<|>|<=|>=)\s*{_COLUMN}$')
_PLAIN_COLUMN = re.compile(rf'^{_COLUMN}(?:\s+(?:as\s+)?\w+)?$')
_AGGREGATE = re.compile(rf'^(?:count|sum|min|max|avg)\(\s*(?:distinct\s+)?{_COLUMN}\s*\)(?:\s+(?:as\s+)?\w+)?$')
_COUNT_STAR = re.compile(r'^count\(\s*(?:\*|\?)\s*\)(?:\s+(?:as\s+)?\w+)?$')
_PREFIX_LIKE = re.compile(r"(?:\w+\.)?(\w+)\s+like\s+'([^'%_][^']*)'", re.IGNORECASE)
_CLAUSE_END = r'(?=\bgroup\s+by\b|\border\s+by\b|\blimit\b|\bhaving\b|\bfor\b|$)'


@dataclass
class IndexDefinition:
    schema: str
    table: str
    name: str
    columns: List[str]
    unique: bool = False
    index_type: str = 'BTREE'
    functional: bool = False

    @property
    def is_primary(self) -> bool:
        return self.name == 'PRIMARY'


@dataclass
class RedundantIndex:
    schema: str
    table: str
    redundant_index: str
    redundant_columns: List[str]
    dominant_index: str
    dominant_columns: List[str]

    @property
    def drop_statement(self) -> str:
        return f"ALTER TABLE `{self.schema}`.`{self.table}` DROP INDEX `{self.redundant_index}`"


def _is_redundant(candidate: IndexDefinition, other: IndexDefinition) -> bool:
    if candidate.is_primary:
        return False

    width = len(candidate.columns)
    if width > len(other.columns) or other.columns[:width] != candidate.columns:
        return False

    exact = width == len(other.columns)
    if candidate.unique:
        # A unique constraint is only redundant when another unique index
        # enforces exactly the same columns.
        if not (exact and other.unique):
            return False
    if exact and not other.is_primary and (candidate.unique == other.unique):
        # Duplicates: keep the name that sorts first.
        return candidate.name > other.name
    return True


def find_redundant_indexes(definitions: List[IndexDefinition]) -> List[RedundantIndex]:
    """
    Indexes whose columns are a leftmost prefix of another index on the same
    table (the same rule sys.schema_redundant_indexes applies). Indexes with
    functional key parts are skipped: their expressions are not compared.
    """
    by_table: Dict[Tuple[str, str], List[IndexDefinition]] = {}
    for definition in definitions:
        if definition.index_type.upper() in _IGNORED_INDEX_TYPES or definition.functional:
            continue
        by_table.setdefault((definition.schema, definition.table), []).append(definition)

    results = []
    for (schema, table), table_indexes in by_table.items():
        for candidate in table_indexes:
            for other in table_indexes:
                if other is candidate or not _is_redundant(candidate, other):
                    continue
                results.append(RedundantIndex(
                    schema=schema,
                    table=table,
                    redundant_index=candidate.name,
                    redundant_columns=list(candidate.columns),
                    dominant_index=other.name,
                    dominant_columns=list(other.columns),
                ))
                break
    return results


@dataclass
class IndexSuggestion:
    table: str
    columns: List[str]
    covering: bool
    equality_columns: List[str] = field(default_factory=list)
    range_columns: List[str] = field(default_factory=list)
    order_columns: List[str] = field(default_factory=list)

    @property
    def index_name(self) -> str:
        return ('idx_' + '_'.join(self.columns))[:MAX_IDENTIFIER_LENGTH]

    @property
    def ddl(self) -> str:
        table = '.'.join(f'`{part}`' for part in self.table.split('.'))
        columns = ', '.join(f'`{c}`' for c in self.columns)
        return f"ALTER TABLE {table} ADD INDEX `{self.index_name}` ({columns})"


def _mask(match: 're.Match') -> str:
    if match.lastgroup == 'hint':
        return ' '
    return _replace_token(match)


def _append_unique(target: List[str], column: str):
    if column not in target:
        target.append(column)


def _first_group(match: 're.Match') -> str:
    return next(g for g in match.groups() if g)


def _clause(body: str, start: str) -> Optional[str]:
    match = re.search(rf'\b{start}\b\s+(.*?){_CLAUSE_END}', body)
    return match.group(1).strip() if match else None


def _split_top_level(text: str, separator: str) -> List[str]:
    """Split on a separator regex, ignoring anything inside parentheses."""
    parts, depth, start = [], 0, 0
    pattern = re.compile(separator)
    i = 0
    while i < len(text):
        char = text[i]
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
        elif depth == 0:
            match = pattern.match(text, i)
            if match and match.end() > i:
                parts.append(text[start:i].strip())
                start = i = match.end()
                continue
        i += 1
    parts.append(text[start:].strip())
    return [p for p in parts if p]


def suggest_covering_index(sql: str) -> Optional[IndexSuggestion]:
    """
    Propose an index for a single-table SELECT.

    The seekable prefix is the equality predicates followed by either the
    ORDER BY / GROUP BY columns (when there is no range predicate) or the
    first range predicate; a range ends the part of the index MySQL can seek
    on. A covering suggestion then appends the remaining range, ORDER BY and
    selected columns. ``SELECT *`` produces a non-covering suggestion made of
    the seekable prefix only. Returns None for joins (including comma joins),
    subqueries, OR-ed predicates and statements with nothing indexable.
    """
    if statement_type(sql) != 'SELECT':
        return None
    tables = extract_tables(sql)
    body = _TOKEN.sub(_mask, sql).lower()
    body = re.sub(r'\s+', ' ', body).strip().rstrip(';').strip()
    if len(tables) != 1 or re.search(r'\bjoin\b|\(\s*select\b|\bunion\b', body):
        return None

    from_clause = _clause(body, 'from')
    if from_clause:
        from_clause = re.split(r'\bwhere\b', from_clause, maxsplit=1)[0]
        if len(_split_top_level(from_clause, r'\s*,\s*')) > 1:
            return None

    select_match = re.match(r'select\s+(?:distinct\s+)?(.*?)\s+from\s', body)
    if not select_match:
        return None

    where = _clause(body, 'where')
    if where and re.search(r'\bor\b', where):
        return None

    equality: List[str] = []
    ranges: List[str] = []
    if where:
        where = re.sub(r'\bbetween\s+\?\s+and\s+\?', 'between ?', where)
        for predicate in _split_top_level(where, r'\s+and\s+'):
            if predicate.startswith('(') and predicate.endswith(')'):
                predicate = predicate[1:-1].strip()
            match = _EQUALITY.match(predicate)
            if match:
                _append_unique(equality, _first_group(match))
                continue
            match = _RANGE.match(predicate) or _REVERSED_RANGE.match(predicate)
            if match:
                _append_unique(ranges, _first_group(match))
        for column, _pattern in _PREFIX_LIKE.findall(sql):
            column = column.lower()
            if column not in equality:
                _append_unique(ranges, column)

    order: List[str] = []
    for clause_name in ('group by', 'order by'):
        clause = _clause(body, clause_name.replace(' ', r'\s+'))
        if not clause:
            continue
        for item in _split_top_level(clause, r'\s*,\s*'):
            match = re.match(rf'^{_COLUMN}(?:\s+(?:asc|desc))?$', item)
            if match:
                _append_unique(order, match.group(1))

    selected: List[str] = []
    covering = True
    for item in _split_top_level(select_match.group(1), r'\s*,\s*'):
        if item == '*' or item.endswith('.*'):
            covering = False
            continue
        if _COUNT_STAR.match(item):
            continue
        match = _PLAIN_COLUMN.match(item) or _AGGREGATE.match(item)
        if match:
            _append_unique(selected, match.group(1))
        else:
            covering = False

    if not (equality or ranges or order):
        return None

    columns: List[str] = list(equality)
    if order and not ranges:
        for column in order:
            _append_unique(columns, column)
    elif ranges:
        _append_unique(columns, ranges[0])

    if covering:
        for column in ranges + order + selected:
            _append_unique(columns, column)

    return IndexSuggestion(
        table=tables[0],
        columns=columns,
        covering=covering,
        equality_columns=equality,
        range_columns=ranges,
        order_columns=order,
    )
