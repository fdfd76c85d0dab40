"""Enumerations and fixed values shared across the stockbook modules.

The data access layer, the ledger logic, the reports, and the CLI all import
their identifiers from here so the workbook vocabulary has one definition.
"""

from __future__ import annotations

from enum import Enum


# Schema version the code expects the configured workbook to declare.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Hard ceiling on rows returned by the filtered ledger listing.
ALL_TRANSACTIONS_LIMIT = 100

# Bucket name used by the category breakdown for products without a category.
UNCATEGORIZED = "Uncategorized"

# Meta sheet key holding the next transaction identifier.
SEQUENCE_KEY = "NextTransactionID"


class TransactionType(str, Enum):
    """Enumerate the three kinds of stock movement recorded in the ledger."""

    IN = "IN"
    OUT = "OUT"
    ADJUST = "ADJUST"


class OutReason(str, Enum):
    """Enumerate the reason prefixes written at the start of ``OUT`` notes.

    Only :attr:`SOLD` counts toward revenue and profit; the others describe
    shrinkage that shares the ``OUT`` type.
    """

    SOLD = "Sold"
    DAMAGED = "Damaged"
    EXPIRED = "Expired"
    LOST = "Lost"
    OTHER = "Other"


class ExpiryUrgency(str, Enum):
    """Enumerate how soon a product or batch expires."""

    CRITICAL = "critical"
    URGENT = "urgent"
    SOON = "soon"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    STOCK_TRANSACTIONS = "StockTransactions"
    META = "Meta"


SALE_MARKER = OutReason.SOLD.value


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ALL_TRANSACTIONS_LIMIT",
    "UNCATEGORIZED",
    "SEQUENCE_KEY",
    "SALE_MARKER",
    "TransactionType",
    "OutReason",
    "ExpiryUrgency",
    "SheetName",
]
