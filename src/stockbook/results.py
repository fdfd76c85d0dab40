"""Outcome values returned by ledger operations.

Writer, reverser, and lookup functions hand back either :class:`Ok` wrapping
the produced value or :class:`Err` wrapping one of the failure kinds below.
Rejections such as insufficient stock are ordinary return values; callers
that would rather raise can call :meth:`Err.unwrap`, which raises
:class:`LedgerError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Generic, NoReturn, Optional, TypeVar, Union


T = TypeVar("T")


@dataclass(frozen=True)
class NotFound:
    """A referenced product or transaction does not exist."""

    entity: str
    key: object

    def describe(self) -> str:
        return f"{self.entity} not found: {self.key}"


@dataclass(frozen=True)
class InsufficientStock:
    """An ``OUT`` movement would drive the balance below zero."""

    current_stock: Decimal
    requested: Decimal
    unit: str

    def describe(self) -> str:
        return (
            f"Insufficient stock: requested {self.requested} {self.unit}, "
            f"current stock is {self.current_stock} {self.unit}"
        )


@dataclass(frozen=True)
class InvalidReversal:
    """A transaction cannot be reverted without breaking the balance rules."""

    transaction_id: int
    reason: str
    current_stock: Optional[Decimal] = None
    reverted_stock: Optional[Decimal] = None

    def describe(self) -> str:
        return f"Cannot revert transaction {self.transaction_id}: {self.reason}"


@dataclass(frozen=True)
class StorageFailure:
    """The workbook could not be persisted; the unit of work was rolled back."""

    detail: str

    def describe(self) -> str:
        return f"Storage failure: {self.detail}"


LedgerFailure = Union[NotFound, InsufficientStock, InvalidReversal, StorageFailure]


class LedgerError(Exception):
    """Raised by :meth:`Err.unwrap` to surface a failure as an exception."""

    def __init__(self, failure: LedgerFailure) -> None:
        super().__init__(failure.describe())
        self.failure = failure


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    failure: LedgerFailure

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self) -> NoReturn:
        raise LedgerError(self.failure)


Result = Union[Ok[T], Err]


__all__ = [
    "NotFound",
    "InsufficientStock",
    "InvalidReversal",
    "StorageFailure",
    "LedgerFailure",
    "LedgerError",
    "Ok",
    "Err",
    "Result",
]
