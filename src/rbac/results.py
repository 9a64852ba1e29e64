"""Outcome types returned by the RBAC services."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from .exceptions import RBACErrorCode

T = TypeVar("T")


@dataclass
class ServiceResult:
    """Generic service operation result."""

    success: bool
    message: str
    errors: list[str] = field(default_factory=list)
    code: Optional[RBACErrorCode] = None
    data: Any = None

    @classmethod
    def ok(cls, message: str, data: Any = None, code: Optional[RBACErrorCode] = None) -> "ServiceResult":
        return cls(success=True, message=message, data=data, code=code)

    @classmethod
    def fail(cls, code: RBACErrorCode, message: str, *errors: str) -> "ServiceResult":
        return cls(success=False, message=message, errors=list(errors), code=code)


@dataclass
class BatchResult:
    """Per-item outcomes of a bulk or transfer operation."""

    successful: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def to_dict(self) -> dict:
        return {
            "successful": list(self.successful),
            "failed": list(self.failed),
            "total": self.total,
            "successful_count": len(self.successful),
            "failed_count": len(self.failed),
        }


@dataclass
class Page(Generic[T]):
    """One page of a listing."""

    items: list[T]
    page: int
    page_size: int
    total: int
    groups: Optional[dict] = None

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return math.ceil(self.total / self.page_size)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1
