"""Error types and helpers for the conductor pipeline."""

from __future__ import annotations

import re

import click


class SchemaNotInitializedError(click.ClickException):
    """Raised when the registry table has not been created."""


class InvalidGraphError(click.ClickException):
    """Raised when proposed tasks have dangling dependencies, duplicates or a cycle."""

    def __init__(self, message: str, *, offending: list[str] | None = None) -> None:
        super().__init__(message)
        self.offending = offending or []


class DecompositionError(click.ClickException):
    """Raised when the requirements could not be broken down into tasks."""


class IntakeClosedError(RuntimeError):
    """Raised when a message is submitted after requirements were finalized."""


class ServiceError(RuntimeError):
    """Raised when the language-model service fails or returns an unusable payload."""


class PhaseFailure(RuntimeError):
    """A planning or execution phase failed; counts as a failed task attempt."""

    def __init__(self, phase: str, reason: str) -> None:
        super().__init__(f"{phase} failed: {reason}")
        self.phase = phase
        self.reason = reason


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    if missing_table_name(exc):
        return True

    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    return "\n".join(
        [
            f"Registry schema is not initialized{table_hint}.",
            "Run: `conductor init-db`",
            "Or validate with: `conductor schema-check`",
        ]
    )
