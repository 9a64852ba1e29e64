"""
RBAC error taxonomy.

Business-rule rejections are reported as ``ServiceResult`` outcomes carrying
an ``RBACErrorCode``. Only storage failures are raised, as ``StorageError``,
so callers can tell an operational failure apart from a rejection.
"""

from enum import Enum
from typing import Optional


class RBACErrorCode(str, Enum):
    """Machine-checkable failure reasons."""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    INVARIANT_VIOLATION = "invariant_violation"
    PROTECTED_ENTITY = "protected_entity"
    IN_USE = "in_use"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"
    STORAGE_ERROR = "storage_error"


class RBACError(Exception):
    """Base class for errors raised by the RBAC core."""

    code: RBACErrorCode = RBACErrorCode.VALIDATION

    def __init__(self, message: str, code: Optional[RBACErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class StorageError(RBACError):
    """Raised when the backing store fails to run a statement or commit."""

    code = RBACErrorCode.STORAGE_ERROR
