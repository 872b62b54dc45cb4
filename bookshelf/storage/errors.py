from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class StorageError(Exception):
    """Base class for failures raised by the relational stores."""


class ConstraintViolation(StorageError):
    """A uniqueness or ownership constraint rejected the write.

    ``detail`` names the offending field (``{"field": "email"}``) or the
    missing parent row, and is passed through to the 409 response.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class SchemaNotReady(StorageError, RuntimeError):
    def __init__(self, missing_tables: Sequence[str]):
        self.missing_tables = sorted(missing_tables)
        super().__init__(
            "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                ", ".join(self.missing_tables)
            )
        )


__all__ = ["StorageError", "ConstraintViolation", "SchemaNotReady"]
