"""Dialect-aware query validation.

Errors make a query invalid; warnings never do. Relational statements are
also parsed with sqlglot so that table references and UPDATE/DELETE without
WHERE are read from the AST, with text patterns as the fallback when parsing
fails.
"""
from __future__ import annotations

import re
from typing import List, Optional

import sqlglot
from sqlglot import expressions as exp
from sqlglot.errors import ParseError, TokenError

from dbgateway.clients.mongo_query import MongoQueryParseError, parse_mongo_query
from dbgateway.models.config import EngineKind
from dbgateway.models.query import ValidationError, ValidationResult, ValidationWarning
from dbgateway.models.schema import DatabaseSchema

SQLGLOT_DIALECTS = {
    EngineKind.MYSQL: "mysql",
    EngineKind.POSTGRESQL: "postgres",
    EngineKind.SQLITE: "sqlite",
}

TABLE_REFERENCE = re.compile(
    r"\b(?:from|join|update|into)\s+([a-zA-Z_][a-zA-Z0-9_]*)(?:\.([a-zA-Z_][a-zA-Z0-9_]*))?",
    re.IGNORECASE,
)
DROP_PATTERN = re.compile(r"\bdrop\s+(?:table|database)\b", re.IGNORECASE)
UNSAFE_PATTERNS = [
    re.compile(r"union\s+select", re.IGNORECASE),
    re.compile(r";\s*(?:drop|delete|insert|update)\b", re.IGNORECASE),
]
UNSUPPORTED_SQLITE_JOIN = re.compile(r"\b(?:right|full\s+outer)\s+join\b", re.IGNORECASE)
ILIKE_PATTERN = re.compile(r"\bilike\b", re.IGNORECASE)
SELECT_PATTERN = re.compile(r"\bselect\b", re.IGNORECASE)
LIMIT_PATTERN = re.compile(r"\blimit\b", re.IGNORECASE)
AGGREGATE_PATTERN = re.compile(r"\b(?:count|sum|avg|max|min)\s*\(", re.IGNORECASE)
MUTATION_PATTERN = re.compile(r"\b(?:update|delete)\b", re.IGNORECASE)
WHERE_PATTERN = re.compile(r"\bwhere\b", re.IGNORECASE)


def _position(query: str, index: int):
    """Turns a character offset into a 1-based (line, column) pair."""
    line = query.count("\n", 0, index) + 1
    column = index - (query.rfind("\n", 0, index) + 1) + 1
    return line, column


class QueryValidator:
    def __init__(self, engine: EngineKind, schema: DatabaseSchema):
        self.engine = EngineKind(engine)
        self.schema = schema
        self.errors: List[ValidationError] = []
        self.warnings: List[ValidationWarning] = []

    def validate(self, query: str) -> ValidationResult:
        if self.engine == EngineKind.MONGODB:
            self._validate_mongo(query)
        else:
            self._validate_sql(query)
        self._validate_common(query)
        return ValidationResult(is_valid=not self.errors, errors=self.errors, warnings=self.warnings)

    def _error(self, message: str, index: int = 0, query: str = "") -> None:
        line, column = _position(query, index) if query else (1, 1)
        self.errors.append(ValidationError(line=line, column=column, message=message))

    def _warn(self, message: str, suggestion: Optional[str] = None) -> None:
        self.warnings.append(ValidationWarning(message=message, suggestion=suggestion))

    def _validate_sql(self, query: str) -> None:
        statements = self._parse(query)

        if DROP_PATTERN.search(query):
            self._warn(
                "Potentially dangerous DROP operation detected",
                "Consider using a backup before executing DROP statements",
            )

        if self._has_unbounded_mutation(query, statements):
            self._warn(
                "UPDATE/DELETE without WHERE clause affects all rows",
                "Add a WHERE clause to limit affected rows",
            )

        if self.engine == EngineKind.SQLITE:
            match = UNSUPPORTED_SQLITE_JOIN.search(query)
            if match:
                self._error(
                    "RIGHT JOIN and FULL OUTER JOIN are not supported in SQLite",
                    match.start(), query,
                )

        if self.engine != EngineKind.POSTGRESQL:
            match = ILIKE_PATTERN.search(query)
            if match:
                self._error("ILIKE operator is PostgreSQL-specific", match.start(), query)

        self._validate_table_references(query, statements)

    def _parse(self, query: str) -> Optional[List[exp.Expression]]:
        try:
            return [s for s in sqlglot.parse(query, read=SQLGLOT_DIALECTS[self.engine]) if s is not None]
        except (ParseError, TokenError) as e:
            self._warn(
                f"Query could not be parsed as {SQLGLOT_DIALECTS[self.engine]} SQL: {str(e).splitlines()[0]}",
                "Check the statement syntax",
            )
            return None

    @staticmethod
    def _has_unbounded_mutation(query: str, statements: Optional[List[exp.Expression]]) -> bool:
        if statements is None:
            return bool(MUTATION_PATTERN.search(query)) and not WHERE_PATTERN.search(query)
        return any(
            isinstance(s, (exp.Update, exp.Delete)) and not s.args.get("where")
            for s in statements
        )

    @staticmethod
    def _referenced_tables(statements: List[exp.Expression]) -> List[str]:
        """Table names read or written by the statements, in order, CTEs excluded."""
        names: List[str] = []
        for statement in statements:
            if isinstance(statement, (exp.Create, exp.Drop)):
                continue
            ctes = {cte.alias.lower() for cte in statement.find_all(exp.CTE) if cte.alias}
            for table in statement.find_all(exp.Table):
                if not isinstance(table.this, exp.Identifier):
                    continue
                if table.name.lower() not in ctes and table.name not in names:
                    names.append(table.name)
        return names

    @staticmethod
    def _locate(query: str, table_name: str) -> int:
        for match in TABLE_REFERENCE.finditer(query):
            if (match.group(2) or match.group(1)).lower() == table_name.lower():
                return match.start(2) if match.group(2) else match.start(1)
        match = re.search(rf"\b{re.escape(table_name)}\b", query, re.IGNORECASE)
        return match.start() if match else 0

    def _validate_table_references(self, query: str, statements: Optional[List[exp.Expression]]) -> None:
        available = {name.lower() for name in self.schema.table_names()}
        if statements is not None:
            for table_name in self._referenced_tables(statements):
                if table_name.lower() not in available:
                    self._error(f"Table '{table_name}' does not exist", self._locate(query, table_name), query)
            return

        for match in TABLE_REFERENCE.finditer(query):
            table_name = match.group(2) or match.group(1)
            if table_name.lower() not in available:
                self._error(f"Table '{table_name}' does not exist", match.start(1), query)

    def _validate_mongo(self, query: str) -> None:
        try:
            parsed = parse_mongo_query(query)
        except MongoQueryParseError as e:
            self._error(f"Invalid MongoDB query syntax: {e}")
            return
        if parsed.collection not in self.schema.table_names():
            self._error(f"Collection '{parsed.collection}' does not exist")

    def _validate_common(self, query: str) -> None:
        if self.engine != EngineKind.MONGODB:
            for pattern in UNSAFE_PATTERNS:
                if pattern.search(query):
                    self._warn(
                        "Potentially unsafe query pattern detected",
                        "Use parameterized queries to prevent SQL injection",
                    )
                    break

        if (
            SELECT_PATTERN.search(query)
            and not LIMIT_PATTERN.search(query)
            and not AGGREGATE_PATTERN.search(query)
        ):
            self._warn("Query may return a large result set", "Consider adding a LIMIT clause")


def validate_query_text(engine: EngineKind, schema: DatabaseSchema, query: str) -> ValidationResult:
    """Validates query text against a schema snapshot."""
    return QueryValidator(engine, schema).validate(query)
