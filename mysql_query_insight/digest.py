"""
Statement fingerprinting.

Statements that differ only in literal values normalize to the same text and
therefore share a fingerprint, which is how slow-log entries are grouped. The
normalization works on tokens found by regular expressions; it does not parse
SQL.
"""

import hashlib
import re
from typing import List

_TOKEN = re.compile(
    r"""
    (?P<hint>/\*\+.*?\*/)
    |(?P<comment>/\*.*?\*/|--[ \t][^\n]*|--$|\#[^\n]*)
    |(?P<hex>\b0x[0-9a-fA-F]+\b|\b[xX]'[0-9a-fA-F]*'|\b[bB]'[01]*')
    |(?P<string>'(?:[^'\\]|\\.|'')*'|"(?:[^"\\]|\\.|"")*")
    |(?P<ident>`(?:[^`]|``)*`)
    |(?P<number>(?<![\w.])-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?(?![\w]))
    """,
    re.VERBOSE | re.DOTALL | re.MULTILINE,
)

_COMPARISON = re.compile(r'\s*(<=>|<>|!=|>=|<=|=|<|>)\s*')
_ARITHMETIC = re.compile(r'(?<=[\w?)])\s*([-+])\s*(?=[\w?(])')
_IN_LIST = re.compile(r'\bin\s?\((?:\?, )*\?\)')
_VALUES_LIST = re.compile(r'\bvalues\s?(\([^()]*\))(?:, \([^()]*\))+')
_TABLE_NAME = r'(?:`?\w+`?\s*\.\s*)?`?\w+`?'
_TABLE_REF = re.compile(rf'\b(?P<keyword>from|join|update|into)\s+(?P<name>{_TABLE_NAME})', re.IGNORECASE)
_CLAUSE_KEYWORDS = ('where|join|inner|left|right|cross|straight_join|natural|full|on|using|group|order|limit|'
                    'having|window|union|for|lock|into|set|values|partition|use|force|ignore|select')
# ", next_table" after a table name and optional alias
_TABLE_LIST_ITEM = re.compile(
    rf'(?:\s+(?:as\s+)?(?!(?:{_CLAUSE_KEYWORDS})\b)\w+)?\s*,\s*(?P<name>{_TABLE_NAME})',
    re.IGNORECASE,
)

_NOT_TABLES = {'select', 'dual', 'outfile', 'dumpfile', 'lateral'}

STATEMENT_TYPES = ('SELECT', 'INSERT', 'UPDATE', 'DELETE', 'REPLACE', 'CALL')


def _follows_operand(match: 're.Match') -> bool:
    before = match.string[:match.start()].rstrip()
    return bool(before) and (before[-1].isalnum() or before[-1] in '_)`?\'"')


def _replace_token(match: 're.Match') -> str:
    kind = match.lastgroup
    if kind == 'hint':
        return match.group(0)
    if kind == 'comment':
        return ' '
    if kind == 'ident':
        return match.group(0)[1:-1].replace('``', '`')
    if kind == 'number' and match.group(0).startswith('-') and _follows_operand(match):
        # Binary minus: a -1 is a - 1, not a followed by -1
        return '- ?'
    return '?'


def _mask_literals(match: 're.Match') -> str:
    kind = match.lastgroup
    if kind in ('string', 'hex'):
        return '?'
    if kind in ('comment', 'hint'):
        return ' '
    return match.group(0)


def normalize_sql(sql: str) -> str:
    """
    Reduce a statement to its digest text.

    Literals become ``?``, ``IN (?, ?, ...)`` becomes ``IN (...)``, multi-row
    ``VALUES`` lists collapse to their first tuple, comments are dropped
    (optimizer hints are kept), whitespace is collapsed, comparison and
    arithmetic operators get single spaces and everything is lowercased.
    """
    text = _TOKEN.sub(_replace_token, sql)
    text = text.lower()
    text = re.sub(r'\s+', ' ', text)
    text = re.sub(r'\s*,\s*', ', ', text)
    text = re.sub(r'\(\s+', '(', text)
    text = re.sub(r'\s+\)', ')', text)
    text = _COMPARISON.sub(r' \1 ', text)
    text = _ARITHMETIC.sub(r' \1 ', text)
    text = re.sub(r'\s+', ' ', text).strip()
    text = _IN_LIST.sub('in (...)', text)
    text = _VALUES_LIST.sub(r'values \1', text)
    return text.rstrip('; ').strip()


def fingerprint(sql: str) -> str:
    """SHA-256 hex digest of the normalized statement."""
    return hashlib.sha256(normalize_sql(sql).encode('utf-8')).hexdigest()


def statement_type(sql: str) -> str:
    """Leading statement keyword (WITH counts as SELECT)."""
    body = _TOKEN.sub(_replace_token, sql).strip()
    match = re.match(r'\(?\s*(\w+)', body)
    if not match:
        return 'OTHER'
    keyword = match.group(1).upper()
    if keyword == 'WITH':
        return 'SELECT'
    if keyword in STATEMENT_TYPES:
        return keyword
    return 'OTHER'


def _in_function_call(body: str, position: int) -> bool:
    """True when ``position`` sits inside parentheses that do not open a subquery."""
    depth = 0
    for i in range(position - 1, -1, -1):
        char = body[i]
        if char == ')':
            depth += 1
        elif char == '(':
            if depth == 0:
                return not re.match(r'\s*(?:select|with)\b', body[i + 1:], re.IGNORECASE)
            depth -= 1
    return False


def extract_tables(sql: str) -> List[str]:
    """
    Table names referenced after FROM/JOIN/UPDATE/INTO, sorted and unique.

    Comma-separated FROM and UPDATE lists are followed; FROM inside function
    calls such as ``EXTRACT(YEAR FROM col)`` is skipped.
    """
    body = _TOKEN.sub(_mask_literals, sql)
    tables = set()
    for match in _TABLE_REF.finditer(body):
        keyword = match.group('keyword').lower()
        if keyword == 'from' and _in_function_call(body, match.start()):
            continue
        names = [match.group('name')]
        if keyword in ('from', 'update'):
            position = match.end()
            item = _TABLE_LIST_ITEM.match(body, position)
            while item:
                names.append(item.group('name'))
                position = item.end()
                item = _TABLE_LIST_ITEM.match(body, position)
        for name in names:
            name = re.sub(r'[`\s]', '', name)
            if name.lower() not in _NOT_TABLES:
                tables.add(name)
    return sorted(tables)
