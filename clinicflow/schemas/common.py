"""Result envelope shared by all public operations."""

from typing import Any

from pydantic import BaseModel

from clinicflow.core.exceptions import ErrorKind


class OperationResult(BaseModel):
    """Result-or-error envelope; callers branch on ``success``."""

    success: bool
    message: str
    error_kind: ErrorKind | None = None
    payload: Any | None = None

    @classmethod
    def ok(cls, message: str, payload: Any | None = None) -> "OperationResult":
        return cls(success=True, message=message, payload=payload)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> "OperationResult":
        return cls(success=False, message=message, error_kind=kind)
