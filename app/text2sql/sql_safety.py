"""Read-only guard rails for generated SQL.

Validation is regex based and works on a copy of the statement with string
literals and comments blanked out, so quoted user text never trips a check.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .config import sql_safety_config

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_SELECT_STAR = re.compile(r"\bSELECT\s+(?:DISTINCT\s+)?\*\s*FROM\b", re.IGNORECASE)
_QUOTED_IDENTIFIER = re.compile(r'"((?:[^"]|"")*)"|`([^`]*)`')
_TOKEN = re.compile(r"[A-Za-z_][\w.$]*|[(),;]|\S")
_CTE_NAME = re.compile(r"(?:\bWITH(?:\s+RECURSIVE)?|,)\s*([A-Za-z_]\w*)\s+AS\s*\(", re.IGNORECASE)
_NON_TABLE_FROM = (
    re.compile(r"\bEXTRACT\s*\(\s*\w+\s+FROM\b", re.IGNORECASE),
    re.compile(r"\b(?:TRIM|SUBSTRING|OVERLAY)\s*\([^()]*?\bFROM\b", re.IGNORECASE),
    re.compile(r"\bDISTINCT\s+FROM\b", re.IGNORECASE),
)
_TRAILING_LIMIT = re.compile(
    r"\s+LIMIT\s+(\d+)(?P<offset>\s+OFFSET\s+\d+)?\s*$", re.IGNORECASE
)
_ANY_LIMIT = re.compile(r"\bLIMIT\b", re.IGNORECASE)
# Words that close a FROM list at the current nesting level.
_FROM_LIST_END = {
    "where", "group", "order", "having", "limit", "offset", "fetch", "window",
    "union", "intersect", "except", "for", "returning",
}
# Modifiers that may sit between FROM/JOIN and the relation name.
_RELATION_PREFIX = {"only", "lateral"}
_AGGREGATE_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"\bCOUNT\s*\(",
        r"\bSUM\s*\(",
        r"\bAVG\s*\(",
        r"\bMAX\s*\(",
        r"\bMIN\s*\(",
        r"\bGROUP\s+BY\b",
        r"\bHAVING\b",
    )
)
_CLAUSE_WORDS = {"on", "using", "where", "group", "order", "having", "limit", "lateral", "select"}


@dataclass(slots=True)
class SqlSafetyResult:
    is_valid: bool
    violations: list[str] = field(default_factory=list)
    enforced_sql: Optional[str] = None


def _mask(sql: str) -> str:
    """Blank out comments and string literals, keeping offsets stable enough for regexes."""

    masked = _BLOCK_COMMENT.sub(" ", sql)
    masked = _LINE_COMMENT.sub(" ", masked)
    return _STRING_LITERAL.sub("''", masked)


def _paren_depth_at(text: str, position: int) -> int:
    depth = 0
    for char in text[:position]:
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
    return depth


def is_aggregate_query(sql: str) -> bool:
    upper = _mask(sql).upper()
    return any(pattern.search(upper) for pattern in _AGGREGATE_PATTERNS)


def _unquote_identifiers(masked: str) -> str:
    """Turn ``"schema"."Table"`` and backtick names into bare identifiers."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) if match.group(1) is not None else match.group(2)
        return re.sub(r"\W", "_", name.replace('""', '"')) or "_"

    return _QUOTED_IDENTIFIER.sub(_replace, masked)


def _outer_limit(masked: str) -> bool:
    return any(_paren_depth_at(masked, match.start()) == 0 for match in _ANY_LIMIT.finditer(masked))


def extract_tables(sql: str) -> set[str]:
    """Return lower-cased relation names read by the statement, minus CTE names.

    Every item of a comma-separated FROM list counts, at any nesting level,
    as does every JOIN target. Quoted and schema-qualified names are reduced
    to the bare table name.
    """

    masked = _unquote_identifiers(_mask(sql))
    for pattern in _NON_TABLE_FROM:
        masked = pattern.sub(lambda match: match.group(0)[:-4] + "    ", masked)
    cte_names = {name.lower() for name in _CTE_NAME.findall(masked)}

    tokens = _TOKEN.findall(masked)
    tables: set[str] = set()
    depth = 0
    from_lists: set[int] = set()
    expect_relation = False
    for index, token in enumerate(tokens):
        lowered = token.lower()
        if token == "(":
            expect_relation = False
            depth += 1
        elif token == ")":
            from_lists.discard(depth)
            depth = max(0, depth - 1)
        elif lowered in ("from", "join"):
            expect_relation = True
            if lowered == "from":
                from_lists.add(depth)
        elif token == ",":
            expect_relation = depth in from_lists
        elif lowered in _FROM_LIST_END:
            from_lists.discard(depth)
            expect_relation = False
        elif expect_relation and lowered in _RELATION_PREFIX:
            continue
        elif expect_relation and re.match(r"[A-Za-z_]", token):
            expect_relation = False
            if index + 1 < len(tokens) and tokens[index + 1] == "(":
                # table-valued function such as generate_series(...)
                continue
            name = lowered.split(".")[-1]
            if name in _CLAUSE_WORDS or name in cte_names:
                continue
            tables.add(name)
        else:
            expect_relation = False
    return tables


def enforce_limit(sql: str, limit: int) -> str:
    """Replace (or append) the trailing ``LIMIT`` clause, keeping a trailing ``;``."""

    body = sql.strip()
    has_semicolon = body.endswith(";")
    if has_semicolon:
        body = body[:-1].rstrip()
    match = _TRAILING_LIMIT.search(body)
    offset = ""
    if match:
        offset = match.group("offset") or ""
        body = body[: match.start()].rstrip()
    return f"{body} LIMIT {limit}{offset}{';' if has_semicolon else ''}"


def validate_sql_safety(
    sql: str,
    is_aggregate: bool = False,
    *,
    allowed_tables: Iterable[str] | None = None,
    max_limit: int | None = None,
) -> SqlSafetyResult:
    """Check that ``sql`` is a single read-only statement over allow-listed tables."""

    allowed = {table.lower() for table in (allowed_tables or sql_safety_config.allowed_tables)}
    limit = max_limit or sql_safety_config.max_limit
    masked = _mask(sql).strip()
    upper = masked.upper()

    if not (upper.startswith("SELECT") or upper.startswith("WITH")):
        return SqlSafetyResult(False, ["Query must be SELECT only"])

    for keyword in sql_safety_config.denied_keywords:
        if re.search(rf"\b{keyword}\b", upper):
            return SqlSafetyResult(False, [f"Query contains disallowed keyword: {keyword}"])

    if ";" in masked.rstrip().rstrip(";"):
        return SqlSafetyResult(False, ["Multiple statements are not allowed"])

    violations: list[str] = []
    if not is_aggregate:
        for match in _SELECT_STAR.finditer(masked):
            if _paren_depth_at(masked, match.start()) == 0:
                violations.append("Query contains SELECT * (use explicit columns)")
                break

    disallowed = sorted(table for table in extract_tables(sql) if table not in allowed)
    if disallowed:
        violations.append(f"Query contains disallowed tables: {', '.join(disallowed)}")

    if violations:
        return SqlSafetyResult(False, violations)

    trailing = _TRAILING_LIMIT.search(masked.rstrip(";").rstrip())
    if trailing and int(trailing.group(1)) > limit:
        return SqlSafetyResult(True, [], enforce_limit(sql, limit))
    if not is_aggregate and not _outer_limit(masked):
        return SqlSafetyResult(True, [], enforce_limit(sql, sql_safety_config.default_limit))
    return SqlSafetyResult(True, [])


__all__ = [
    "SqlSafetyResult",
    "enforce_limit",
    "extract_tables",
    "is_aggregate_query",
    "validate_sql_safety",
]
