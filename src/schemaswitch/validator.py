"""
SchemaValidator - Risk classification for migration statements.

The validator turns each raw statement into an ``Operation`` with a kind
and a risk level, and resolves the execution strategy for the request.
All risk rules live in this module.

Responsibilities:
    - Reject requests that cannot be executed (empty, malformed, several
      statements packed in one entry, unknown verbs)
    - Classify every statement; ALTER TABLE actions are classified one by one
      and the statement takes its riskiest action
    - Aggregate risk: LOW only when every statement is LOW
    - Validate the caller's strategy hint against the aggregate risk

The validator is pure: it never touches a database or the network.

Usage:
    >>> validator = SchemaValidator()
    >>> result = validator.validate(["ALTER TABLE users ADD COLUMN nickname TEXT"])
    >>> result.risk_level, result.strategy
    (<RiskLevel.LOW: 'low'>, <MigrationStrategy.SAFE: 'safe'>)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from schemaswitch.models import (
    MigrationStrategy,
    Operation,
    OperationKind,
    RiskLevel,
    ValidationResult,
)

logger = logging.getLogger(__name__)

KNOWN_VERBS = frozenset(
    {
        "ALTER",
        "ANALYZE",
        "CLUSTER",
        "COMMENT",
        "CREATE",
        "DELETE",
        "DO",
        "DROP",
        "GRANT",
        "INSERT",
        "LOCK",
        "REFRESH",
        "REINDEX",
        "REVOKE",
        "SELECT",
        "SET",
        "TRUNCATE",
        "UPDATE",
        "VACUUM",
        "WITH",
    }
)

_I = re.IGNORECASE

_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")

_CREATE_TABLE = re.compile(
    r"^CREATE (?:OR REPLACE )?(?:(?:GLOBAL|LOCAL) )?(?:(?:TEMPORARY|TEMP|UNLOGGED) )?"
    r"TABLE (?:IF NOT EXISTS )?([^\s(]+)",
    _I,
)
_CREATE_INDEX = re.compile(
    r"^CREATE (?:UNIQUE )?INDEX (CONCURRENTLY )?(?:IF NOT EXISTS )?(?:\S+ )?"
    r"ON (?:ONLY )?([^\s(]+)",
    _I,
)
_DROP_TABLE = re.compile(r"^DROP TABLE (?:IF EXISTS )?(\S+)", _I)
_DROP_INDEX = re.compile(r"^DROP INDEX (CONCURRENTLY )?", _I)
_ALTER_TABLE = re.compile(r"^ALTER TABLE (?:IF EXISTS )?(?:ONLY )?(\S+)(?: (.+))?$", _I)
_ALTER_INDEX_RENAME = re.compile(r"^ALTER INDEX (?:IF EXISTS )?\S+ RENAME TO \S+$", _I)

_ADD_CONSTRAINT = re.compile(
    r"^ADD (?:CONSTRAINT \S+ )?(?:PRIMARY KEY|UNIQUE|CHECK|FOREIGN KEY|EXCLUDE)\b", _I
)
_ADD_COLUMN = re.compile(r"^ADD (?:COLUMN )?(?:IF NOT EXISTS )?(\S+)(?: (.*))?$", _I)
_DROP_CONSTRAINT = re.compile(r"^DROP CONSTRAINT\b", _I)
_DROP_COLUMN = re.compile(r"^DROP (?:COLUMN )?(?:IF EXISTS )?(\S+)", _I)
_ALTER_COLUMN = re.compile(r"^ALTER (?:COLUMN )?(\S+) (.+)$", _I)
_RENAME = re.compile(r"^RENAME (?:(?:COLUMN|CONSTRAINT) )?(?:\S+ )?TO \S+$", _I)
_VALIDATE_CONSTRAINT = re.compile(r"^VALIDATE CONSTRAINT \S+$", _I)

_NOT_NULL = re.compile(r"\bNOT NULL\b", _I)
_PRIMARY_KEY = re.compile(r"\bPRIMARY KEY\b", _I)
_DEFAULT = re.compile(r"\bDEFAULT\b", _I)
_NOT_VALID = re.compile(r"\bNOT VALID\b", _I)


@dataclass(frozen=True)
class _Action:
    """Classification of one statement or one ALTER TABLE action."""

    kind: OperationKind
    risk: RiskLevel
    warning: str | None = None


class StatementSyntaxError(ValueError):
    """A statement is malformed beyond classification."""


class SchemaValidator:
    """
    Classifies migration statements and resolves the execution strategy.

    Args:
        strict_mode: Treat destructive operations (DROP COLUMN, DROP TABLE) as errors.
        allowed_operations: If given, any operation kind outside this set is an error.

    Example:
        >>> validator = SchemaValidator(strict_mode=True)
        >>> result = validator.validate(["ALTER TABLE users DROP COLUMN legacy_flag"])
        >>> result.is_valid
        False
    """

    def __init__(
        self,
        strict_mode: bool = False,
        allowed_operations: Iterable[OperationKind] | None = None,
    ) -> None:
        self._strict_mode = strict_mode
        self._allowed = frozenset(allowed_operations) if allowed_operations is not None else None

    @property
    def strict_mode(self) -> bool:
        return self._strict_mode

    def validate(
        self,
        statements: Sequence[str],
        hint: MigrationStrategy | None = None,
    ) -> ValidationResult:
        """
        Validate and classify a request.

        Args:
            statements: Raw statements in submission order, one per entry.
            hint: Optional caller-declared strategy.

        Returns:
            ValidationResult with operations, warnings, errors and strategy.
        """
        result = ValidationResult()

        if not statements:
            result.errors.append("Migration request contains no statements")
            return result

        for index, raw in enumerate(statements):
            position = f"Statement {index + 1}"
            try:
                normalized = normalize_statement(raw)
            except StatementSyntaxError as e:
                result.errors.append(f"{position}: {e}")
                continue

            operation, warning = self._classify(normalized, raw)
            if operation is None:
                result.errors.append(f"{position}: {warning}")
                continue

            result.operations.append(operation)
            if warning:
                result.warnings.append(f"{position}: {warning}")

            if self._strict_mode and operation.kind.is_destructive:
                result.errors.append(
                    f"{position}: {operation.kind.value} is not permitted in strict mode"
                )
            if self._allowed is not None and operation.kind not in self._allowed:
                result.errors.append(f"{position}: operation {operation.kind.value} is not allowed")

        if result.errors:
            return result

        result.strategy = self._resolve_strategy(result, hint)

        logger.debug(
            "Validated %d statements: risk=%s strategy=%s warnings=%d errors=%d",
            len(statements),
            result.risk_level.value,
            result.strategy.value if result.strategy else None,
            len(result.warnings),
            len(result.errors),
        )
        return result

    def _resolve_strategy(
        self,
        result: ValidationResult,
        hint: MigrationStrategy | None,
    ) -> MigrationStrategy | None:
        """Pick the execution path, recording an error if the hint is inconsistent."""
        risk = result.risk_level

        if hint is MigrationStrategy.MAINTENANCE and risk is RiskLevel.LOW:
            result.errors.append("Maintenance mode is unnecessary: every statement is low risk")
            return None

        if hint is MigrationStrategy.SAFE and risk is not RiskLevel.LOW:
            result.errors.append(
                f"Aggregate risk is {risk.value}; the safe path only accepts low-risk requests"
            )
            return None

        if hint is not None:
            return hint
        return MigrationStrategy.SAFE if risk is RiskLevel.LOW else MigrationStrategy.RISKY

    def _classify(self, text: str, original: str) -> tuple[Operation | None, str | None]:
        """
        Classify one normalized statement.

        Returns:
            (operation, warning) on success, (None, error) when the statement
            cannot be executed at all.
        """
        verb = text.split(" ", 1)[0].upper()
        if verb not in KNOWN_VERBS:
            return None, f"unrecognised statement starting with {verb!r}"

        table: str | None = None

        if match := _CREATE_TABLE.match(text):
            table = match.group(1)
            action = _Action(OperationKind.CREATE_TABLE, RiskLevel.LOW)
        elif match := _CREATE_INDEX.match(text):
            table = match.group(2)
            if match.group(1):
                action = _Action(OperationKind.CREATE_INDEX, RiskLevel.LOW)
            else:
                action = _Action(
                    OperationKind.CREATE_INDEX,
                    RiskLevel.MEDIUM,
                    "CREATE INDEX without CONCURRENTLY blocks writes while the index builds",
                )
        elif match := _DROP_TABLE.match(text):
            table = match.group(1)
            action = _Action(
                OperationKind.DROP_TABLE,
                RiskLevel.HIGH,
                "DROP TABLE is irreversible without the rollback point",
            )
        elif match := _DROP_INDEX.match(text):
            action = (
                _Action(OperationKind.OTHER, RiskLevel.LOW)
                if match.group(1)
                else _Action(
                    OperationKind.OTHER,
                    RiskLevel.MEDIUM,
                    "DROP INDEX without CONCURRENTLY blocks access to the table",
                )
            )
        elif text.upper().startswith("ALTER TABLE"):
            match = _ALTER_TABLE.match(text)
            if match is None or not match.group(2):
                return None, "ALTER TABLE requires a table name and at least one action"
            table = match.group(1)
            actions = [_classify_alter_action(part) for part in split_top_level(match.group(2))]
            if not actions:
                return None, "ALTER TABLE requires a table name and at least one action"
            action = max(actions, key=lambda a: a.risk.rank)
            warnings = [a.warning for a in actions if a.warning]
            if warnings:
                action = _Action(action.kind, action.risk, "; ".join(dict.fromkeys(warnings)))
        elif _ALTER_INDEX_RENAME.match(text):
            action = _Action(OperationKind.RENAME, RiskLevel.MEDIUM)
        else:
            action = _Action(
                OperationKind.OTHER,
                RiskLevel.HIGH,
                "statement could not be classified and is treated as high risk",
            )

        operation = Operation(
            kind=action.kind,
            statement=original.strip(),
            risk_level=action.risk,
            table=_unquote(table) if table else None,
        )
        return operation, action.warning


def _classify_alter_action(action: str) -> _Action:
    """Classify a single ALTER TABLE action such as ``ADD COLUMN x int``."""
    if _ADD_CONSTRAINT.match(action):
        if _NOT_VALID.search(action):
            return _Action(OperationKind.ADD_CONSTRAINT, RiskLevel.MEDIUM)
        return _Action(
            OperationKind.ADD_CONSTRAINT,
            RiskLevel.HIGH,
            "constraint is validated against existing rows immediately; consider NOT VALID",
        )

    if match := _ADD_COLUMN.match(action):
        definition = match.group(2) or ""
        not_null = bool(_NOT_NULL.search(definition) or _PRIMARY_KEY.search(definition))
        if not_null and not _DEFAULT.search(definition):
            return _Action(
                OperationKind.ADD_COLUMN,
                RiskLevel.HIGH,
                "NOT NULL column without a default fails on tables with existing rows",
            )
        return _Action(OperationKind.ADD_COLUMN, RiskLevel.LOW)

    if _DROP_CONSTRAINT.match(action):
        return _Action(OperationKind.OTHER, RiskLevel.MEDIUM)

    if _DROP_COLUMN.match(action):
        return _Action(
            OperationKind.DROP_COLUMN,
            RiskLevel.HIGH,
            "DROP COLUMN is irreversible without the rollback point",
        )

    if match := _ALTER_COLUMN.match(action):
        change = match.group(2).upper()
        if change.startswith("TYPE ") or change.startswith("SET DATA TYPE "):
            return _Action(
                OperationKind.ALTER_TYPE,
                RiskLevel.HIGH,
                "column type change may require a table rewrite",
            )
        if change == "SET NOT NULL":
            return _Action(
                OperationKind.ADD_CONSTRAINT,
                RiskLevel.HIGH,
                "NOT NULL constraint may fail on existing rows",
            )
        if change in ("DROP NOT NULL", "DROP DEFAULT") or change.startswith("SET DEFAULT "):
            return _Action(OperationKind.OTHER, RiskLevel.LOW)
        return _Action(
            OperationKind.OTHER,
            RiskLevel.HIGH,
            "column change could not be classified and is treated as high risk",
        )

    if _RENAME.match(action):
        return _Action(
            OperationKind.RENAME,
            RiskLevel.MEDIUM,
            "rename breaks clients that still use the old name",
        )

    if _VALIDATE_CONSTRAINT.match(action):
        return _Action(OperationKind.ADD_CONSTRAINT, RiskLevel.MEDIUM)

    return _Action(
        OperationKind.OTHER,
        RiskLevel.HIGH,
        "ALTER TABLE action could not be classified and is treated as high risk",
    )


def normalize_statement(statement: str) -> str:
    """
    Strip comments and the trailing semicolon, and collapse whitespace.

    Args:
        statement: One raw statement.

    Returns:
        The normalized statement text.

    Raises:
        StatementSyntaxError: If the statement is empty, has unbalanced
            quotes or parentheses, or contains more than one statement.
    """
    out: list[str] = []
    size = 0
    semicolons: list[int] = []
    depth = 0
    quote: str | None = None
    i = 0
    n = len(statement)

    while i < n:
        ch = statement[i]

        if quote is not None:
            out.append(ch)
            size += 1
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch == "$" and (tag := _DOLLAR_TAG.match(statement, i)):
            end = statement.find(tag.group(0), tag.end())
            if end == -1:
                raise StatementSyntaxError("unterminated dollar-quoted string")
            end += len(tag.group(0))
            out.append(statement[i:end])
            size += end - i
            i = end
            continue

        if statement.startswith("--", i):
            newline = statement.find("\n", i)
            i = n if newline == -1 else newline
            continue

        if statement.startswith("/*", i):
            end = statement.find("*/", i + 2)
            if end == -1:
                raise StatementSyntaxError("unterminated block comment")
            out.append(" ")
            size += 1
            i = end + 2
            continue

        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise StatementSyntaxError("unbalanced parentheses")
        elif ch == ";":
            semicolons.append(size)

        out.append(ch)
        size += 1
        i += 1

    if quote is not None:
        raise StatementSyntaxError("unterminated quoted identifier or string")
    if depth != 0:
        raise StatementSyntaxError("unbalanced parentheses")

    text = "".join(out)
    for position in semicolons:
        if text[position + 1 :].strip(" \t\r\n;"):
            raise StatementSyntaxError("more than one statement in a single entry")

    text = " ".join(text.split()).rstrip(" ;")
    if not text:
        raise StatementSyntaxError("statement is empty")
    return text


def split_top_level(text: str) -> list[str]:
    """
    Split on commas that are outside parentheses and quotes.

    Empty parts are dropped.
    """
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    start = 0

    for i, ch in enumerate(text):
        if quote is not None:
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1

    parts.append(text[start:].strip())
    return [part for part in parts if part]


def _unquote(identifier: str) -> str:
    return identifier.replace('"', "")


__all__ = [
    "KNOWN_VERBS",
    "SchemaValidator",
    "StatementSyntaxError",
    "normalize_statement",
    "split_top_level",
]
