"""Ledger logic for stockbook.

This module owns the rules around the append-only ``StockTransactions``
ledger and the ``CurrentStock`` column of the product catalog. It consumes the
Data Access Layer (DAL) for all I/O and guarantees that every mutation runs as
one unit of work: ledger row, catalog stock, and id sequence change together
or not at all.

Ledger outcomes are returned as :class:`~stockbook.results.Ok` or
:class:`~stockbook.results.Err` values; malformed input (unknown transaction
types, non-finite or negative quantities) still raises ``ValueError``.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ExpiryUrgency, TransactionType
from .results import (
    Err,
    InsufficientStock,
    InvalidReversal,
    NotFound,
    Ok,
    Result,
    StorageFailure,
)


@dataclass(frozen=True)
class RuntimeContext:
    """Store handle passed to every ledger, catalog, and report operation.

    ``lock`` serialises all mutations and cache rebuilds; ``_cache`` holds
    read snapshots that every unit of work invalidates.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class StockCommand:
    """Caller intent for one stock movement.

    ``quantity`` is the delta magnitude for ``IN``/``OUT`` and the absolute
    target stock for ``ADJUST``. ``timestamp`` defaults to now and may not
    precede the product's newest ledger row.
    """

    product_id: str
    transaction_type: Union[TransactionType, str]
    quantity: Union[Decimal, int, str]
    notes: Optional[str] = None
    reference_no: Optional[str] = None
    batch_number: Optional[str] = None
    batch_expiry_date: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RecordedTransaction:
    """Result of a committed :func:`record_transaction` call."""

    transaction: data_manager.TransactionRow
    old_stock: Decimal
    new_stock: Decimal


@dataclass(frozen=True)
class RevertedTransaction:
    """Result of a committed :func:`revert_transaction` call.

    ``later_transaction_count`` counts the product's ledger rows dated after
    the reverted one. When it is non-zero their ``balance_after`` snapshots no
    longer match the live stock; they are left untouched.
    """

    transaction: data_manager.TransactionRow
    old_stock: Decimal
    new_stock: Decimal
    later_transaction_count: int


@dataclass(frozen=True)
class LedgerSnapshot:
    """Consistent read view of the catalog and the ledger."""

    products: Dict[str, data_manager.ProductRow]
    transactions: List[data_manager.TransactionRow]


@dataclass(frozen=True)
class LedgerAudit:
    """Outcome of replaying one product's ledger from an opening balance."""

    product_id: str
    opening_stock: Decimal
    replayed_stock: Decimal
    live_stock: Decimal
    drifted_transaction_ids: Tuple[int, ...]

    @property
    def consistent(self) -> bool:
        return not self.drifted_transaction_ids and self.replayed_stock == self.live_stock


@dataclass(frozen=True)
class ExpiringProduct:
    product: data_manager.ProductRow
    days_left: int
    urgency: ExpiryUrgency


@dataclass(frozen=True)
class ExpiringBatch:
    transaction: data_manager.TransactionRow
    product_name: Optional[str]
    days_left: int
    urgency: ExpiryUrgency


class _UnitOfWork:
    """Collects undo actions for the mutations made inside :func:`_atomic`."""

    def __init__(self) -> None:
        self._undo: List[Callable[[], object]] = []

    def on_rollback(self, action: Callable[[], object]) -> None:
        self._undo.append(action)

    def rollback(self) -> None:
        while self._undo:
            action = self._undo.pop()
            action()


@contextmanager
def _atomic(context: RuntimeContext) -> Iterator[_UnitOfWork]:
    """Run the enclosed mutations as a single all-or-nothing unit.

    The context lock is held for the whole block. When auto-save is enabled
    the workbook is persisted before the block counts as committed; any
    exception, including a failed save, replays the registered undo actions
    in reverse order and propagates.
    """

    with context.lock:
        unit = _UnitOfWork()
        try:
            yield unit
            if context.settings.autosave:
                persist_context(context)
        except BaseException:
            log.warning("Rolling back unit of work on '%s'", context.settings.data_file)
            unit.rollback()
            raise
        finally:
            _invalidate_cache(context, "products", "transactions")


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` as a naive local datetime, or the current local time.

    Ledger dates are compared as ISO strings, so aware values are converted
    to local wall-clock time before they are stored.
    """

    if candidate is None:
        return datetime.now()
    if candidate.tzinfo is not None:
        return candidate.astimezone().replace(tzinfo=None)
    return candidate


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context.lock:
        bucket = _get_cache_bucket(context, "products")
        if "all" not in bucket:
            all_products = list(data_manager.iter_products(context.workbook))
            bucket["all"] = all_products
            bucket["by_id"] = {product.product_id: product for product in all_products}
            log.debug("Populated products cache with %d entries", len(all_products))
        return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the ledger cache bucket on demand.

    ``all`` holds the ledger in chronological order (``transaction_date``
    then ``transaction_id``); ``by_id`` is the primary-key lookup.
    """

    with context.lock:
        bucket = _get_cache_bucket(context, "transactions")
        if "all" not in bucket:
            all_transactions = sorted(
                data_manager.iter_transactions(context.workbook),
                key=ledger_sort_key,
            )
            bucket["all"] = all_transactions
            bucket["by_id"] = {
                transaction.transaction_id: transaction for transaction in all_transactions
            }
            log.debug("Populated transactions cache with %d entries", len(all_transactions))
        return bucket


def ledger_sort_key(transaction: data_manager.TransactionRow) -> Tuple[str, int]:
    """Chronological ordering key for ledger rows."""

    return (transaction.transaction_date, transaction.transaction_id)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready to be passed to every operation.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with a different schema version.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist the in-memory workbook to the configured data file."""
    with context.lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk and return a fresh context.

    Unsaved in-memory changes and caches of ``context`` are discarded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def ledger_snapshot(context: RuntimeContext) -> LedgerSnapshot:
    """Return the catalog and the ledger as read under one lock acquisition."""
    with context.lock:
        products = _ensure_products_cache(context)["by_id"]
        transactions = _ensure_transactions_cache(context)["all"]
        return LedgerSnapshot(products=dict(products), transactions=list(transactions))


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return the catalog in sheet order."""
    return list(_ensure_products_cache(context)["all"])


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return the whole ledger, oldest first."""
    return list(_ensure_transactions_cache(context)["all"])


def get_product(context: RuntimeContext, product_id: str) -> Result[data_manager.ProductRow]:
    """Resolve a product record by its identifier."""
    product = _ensure_products_cache(context)["by_id"].get(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        return Err(NotFound("Product", product_id))
    return Ok(product)


def get_transaction(context: RuntimeContext, transaction_id: int) -> Result[data_manager.TransactionRow]:
    """Resolve a ledger row by its identifier."""
    transaction = _ensure_transactions_cache(context)["by_id"].get(transaction_id)
    if transaction is None:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        return Err(NotFound("Transaction", transaction_id))
    return Ok(transaction)


def add_product(context: RuntimeContext, product: data_manager.ProductRow) -> Result[data_manager.ProductRow]:
    """Append a product to the catalog.

    The opening ``current_stock`` is written as given; it is not recorded in
    the ledger.

    Raises:
        ValueError: If the identifier is already taken or a numeric field is
            negative.
    """
    for label, value in (
        ("current_stock", product.current_stock),
        ("min_stock", product.min_stock),
        ("purchase_price", product.purchase_price),
        ("selling_price", product.selling_price),
    ):
        if not value.is_finite() or value < 0:
            raise ValueError(f"Product {label} must be a finite, non-negative number")

    with context.lock:
        if data_manager.find_product(context.workbook, product.product_id) is not None:
            raise ValueError(f"Product already exists: {product.product_id}")
        try:
            with _atomic(context) as unit:
                row_index = data_manager.append_product(context.workbook, product)
                unit.on_rollback(
                    lambda: data_manager.delete_row(context.workbook, data_manager.PRODUCTS_SHEET, row_index)
                )
        except OSError as exc:
            log.error("Failed to persist product '%s': %s", product.product_id, exc)
            return Err(StorageFailure(str(exc)))

    log.info("Added product '%s' (%s)", product.product_id, product.product_name)
    return Ok(product)


def coerce_quantity(value: Union[Decimal, int, float, str]) -> Decimal:
    """Convert caller input into a finite, non-negative :class:`Decimal`.

    Raises:
        ValueError: If the value is not a number, is NaN or infinite, or is
            negative.
    """
    if isinstance(value, bool):
        raise ValueError("Quantity must be a number")
    if isinstance(value, Decimal):
        quantity = value
    else:
        try:
            quantity = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"Quantity must be a number: {value!r}") from exc
    if not quantity.is_finite():
        log.error("Quantity validation failed: %s", value)
        raise ValueError("Quantity must be finite")
    if quantity < 0:
        log.error("Quantity validation failed: %s", value)
        raise ValueError("Quantity must be zero or positive")
    return quantity


def apply_movement(balance: Decimal, transaction_type: TransactionType, quantity: Decimal) -> Decimal:
    """Return the balance after one movement, without any sign check."""
    if transaction_type is TransactionType.IN:
        return balance + quantity
    if transaction_type is TransactionType.OUT:
        return balance - quantity
    return quantity


def compute_new_stock(
    product: data_manager.ProductRow,
    transaction_type: TransactionType,
    quantity: Decimal,
) -> Result[Decimal]:
    """Compute the balance a movement would produce for ``product``.

    ``OUT`` movements that would go below zero are rejected with
    :class:`InsufficientStock`; nothing is clamped.
    """
    new_stock = apply_movement(product.current_stock, transaction_type, quantity)
    if new_stock < 0:
        return Err(InsufficientStock(
            current_stock=product.current_stock,
            requested=quantity,
            unit=product.unit,
        ))
    return Ok(new_stock)


def compute_reverted_stock(
    current_stock: Decimal,
    transaction: data_manager.TransactionRow,
) -> Result[Decimal]:
    """Compute the live stock after undoing ``transaction``.

    The inverse is applied to the current balance, not to the historical one.
    ``ADJUST`` rows discard the value they replaced, so they have no inverse
    and are refused.
    """
    if transaction.transaction_type is TransactionType.ADJUST:
        return Err(InvalidReversal(
            transaction_id=transaction.transaction_id,
            reason="ADJUST transactions cannot be reverted",
            current_stock=current_stock,
        ))

    if transaction.transaction_type is TransactionType.IN:
        reverted = current_stock - transaction.quantity
    else:
        reverted = current_stock + transaction.quantity

    if reverted < 0:
        return Err(InvalidReversal(
            transaction_id=transaction.transaction_id,
            reason="stock would become negative",
            current_stock=current_stock,
            reverted_stock=reverted,
        ))
    return Ok(reverted)


def build_transaction(
    command: StockCommand,
    *,
    transaction_id: int,
    transaction_type: TransactionType,
    quantity: Decimal,
    unit: str,
    balance_after: Decimal,
    timestamp: datetime,
) -> data_manager.TransactionRow:
    """Materialize a :class:`StockCommand` into a DAL ledger row."""
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        product_id=command.product_id,
        transaction_type=transaction_type,
        quantity=quantity,
        unit=unit,
        notes=command.notes,
        reference_no=command.reference_no,
        balance_after=balance_after,
        batch_number=command.batch_number,
        batch_expiry_date=command.batch_expiry_date,
        transaction_date=timestamp.isoformat(timespec="seconds"),
    )


def _allocate_transaction_id(context: RuntimeContext, unit: _UnitOfWork) -> int:
    next_id = data_manager.read_sequence(context.workbook)
    data_manager.write_sequence(context.workbook, next_id + 1)
    unit.on_rollback(lambda: data_manager.write_sequence(context.workbook, next_id))
    return next_id


def _append_ledger_row(context: RuntimeContext, unit: _UnitOfWork, record: data_manager.TransactionRow) -> None:
    row_index = data_manager.append_transaction(context.workbook, record)
    unit.on_rollback(
        lambda: data_manager.delete_row(context.workbook, data_manager.TRANSACTIONS_SHEET, row_index)
    )


def _delete_ledger_row(context: RuntimeContext, unit: _UnitOfWork, transaction_id: int) -> None:
    row_index = data_manager.locate_row(
        context.workbook, data_manager.TRANSACTIONS_SHEET, "TransactionID", transaction_id)
    if row_index is None:
        raise KeyError(f"Transaction not found: {transaction_id}")
    values = data_manager.delete_row(context.workbook, data_manager.TRANSACTIONS_SHEET, row_index)
    unit.on_rollback(
        lambda: data_manager.restore_row(context.workbook, data_manager.TRANSACTIONS_SHEET, row_index, values)
    )


def _set_stock(context: RuntimeContext, unit: _UnitOfWork, product_id: str, value: Decimal) -> None:
    previous = data_manager.update_product(
        context.workbook, product_id, field_values={"CurrentStock": value})
    unit.on_rollback(
        lambda: data_manager.update_product(context.workbook, product_id, field_values=previous)
    )


def _newest_ledger_date(context: RuntimeContext, product_id: str) -> Optional[str]:
    dates = [
        row.transaction_date
        for row in data_manager.iter_transactions(context.workbook)
        if row.product_id == product_id
    ]
    return max(dates, default=None)


def record_transaction(context: RuntimeContext, command: StockCommand) -> Result[RecordedTransaction]:
    """Validate a stock movement and commit it to the ledger and the catalog.

    The live stock is read, checked, and overwritten while the context lock
    is held, so concurrent callers cannot overdraw a product from a stale
    balance. The ledger append, the stock update, and the id allocation form
    one unit of work.

    Args:
        context (RuntimeContext): Store handle.
        command (StockCommand): Movement to apply.

    Returns:
        Result[RecordedTransaction]: ``Ok`` with the persisted row plus the
            old and new stock, or ``Err`` with :class:`NotFound`,
            :class:`InsufficientStock`, or :class:`StorageFailure`.

    Raises:
        ValueError: If the transaction type or the quantity is malformed, or
            if ``command.timestamp`` is earlier than the product's newest
            ledger row. Each ``balance_after`` is only valid when rows are
            appended in chronological order.
    """
    transaction_type = TransactionType(command.transaction_type)
    quantity = coerce_quantity(command.quantity)

    with context.lock:
        product = data_manager.find_product(context.workbook, command.product_id)
        if product is None:
            log.warning("Rejected %s for unknown product '%s'", transaction_type.value, command.product_id)
            return Err(NotFound("Product", command.product_id))

        outcome = compute_new_stock(product, transaction_type, quantity)
        if isinstance(outcome, Err):
            log.warning(
                "Rejected %s %s %s for product '%s': %s",
                transaction_type.value,
                quantity,
                product.unit,
                product.product_id,
                outcome.failure.describe(),
            )
            return outcome
        new_stock = outcome.value

        timestamp = _resolve_timestamp(command.timestamp)
        stamp = timestamp.isoformat(timespec="seconds")
        newest = _newest_ledger_date(context, product.product_id)
        if newest is not None and stamp < newest:
            raise ValueError(
                f"Timestamp {stamp} predates the latest ledger entry for product "
                f"'{product.product_id}' ({newest})"
            )
        try:
            with _atomic(context) as unit:
                transaction_id = _allocate_transaction_id(context, unit)
                record = build_transaction(
                    command,
                    transaction_id=transaction_id,
                    transaction_type=transaction_type,
                    quantity=quantity,
                    unit=product.unit,
                    balance_after=new_stock,
                    timestamp=timestamp,
                )
                _append_ledger_row(context, unit, record)
                _set_stock(context, unit, product.product_id, new_stock)
        except OSError as exc:
            log.error("Failed to persist %s for product '%s': %s", transaction_type.value, product.product_id, exc)
            return Err(StorageFailure(str(exc)))

    log.info(
        "Recorded %s transaction %d for product '%s' (quantity=%s %s, stock %s -> %s)%s",
        transaction_type.value,
        record.transaction_id,
        product.product_id,
        quantity,
        product.unit,
        product.current_stock,
        new_stock,
        f" batch {command.batch_number}" if command.batch_number else "",
    )
    return Ok(RecordedTransaction(transaction=record, old_stock=product.current_stock, new_stock=new_stock))


def revert_transaction(context: RuntimeContext, transaction_id: int) -> Result[RevertedTransaction]:
    """Delete a ledger row and undo its effect on the live stock.

    The inverse is applied to the product's current stock. Only reverting a
    product's most recent transaction keeps the ledger consistent: rows
    recorded after the reverted one keep their ``balance_after`` snapshots,
    which then disagree with the live stock. They are not recomputed.

    Returns:
        Result[RevertedTransaction]: ``Ok`` on success, otherwise ``Err``
            with :class:`NotFound`, :class:`InvalidReversal`, or
            :class:`StorageFailure`.
    """
    with context.lock:
        transaction = data_manager.find_transaction(context.workbook, transaction_id)
        if transaction is None:
            log.warning("Cannot revert unknown transaction %s", transaction_id)
            return Err(NotFound("Transaction", transaction_id))

        product = data_manager.find_product(context.workbook, transaction.product_id)
        if product is None:
            log.warning(
                "Cannot revert transaction %s: product '%s' no longer exists",
                transaction_id,
                transaction.product_id,
            )
            return Err(NotFound("Product", transaction.product_id))

        outcome = compute_reverted_stock(product.current_stock, transaction)
        if isinstance(outcome, Err):
            log.warning("%s", outcome.failure.describe())
            return outcome
        reverted_stock = outcome.value

        cutoff = ledger_sort_key(transaction)
        later = sum(
            1
            for row in data_manager.iter_transactions(context.workbook)
            if row.product_id == transaction.product_id and ledger_sort_key(row) > cutoff
        )

        try:
            with _atomic(context) as unit:
                _delete_ledger_row(context, unit, transaction.transaction_id)
                _set_stock(context, unit, product.product_id, reverted_stock)
        except OSError as exc:
            log.error("Failed to persist reversal of transaction %s: %s", transaction_id, exc)
            return Err(StorageFailure(str(exc)))

    log.info(
        "Reverted %s transaction %d for product '%s' (stock %s -> %s)",
        transaction.transaction_type.value,
        transaction.transaction_id,
        product.product_id,
        product.current_stock,
        reverted_stock,
    )
    if later:
        log.warning(
            "Transaction %d was followed by %d later transaction(s) for product '%s'; "
            "their balance_after snapshots are now stale",
            transaction.transaction_id,
            later,
            product.product_id,
        )
    return Ok(RevertedTransaction(
        transaction=transaction,
        old_stock=product.current_stock,
        new_stock=reverted_stock,
        later_transaction_count=later,
    ))


def audit_product_ledger(
    context: RuntimeContext,
    product_id: str,
    *,
    opening_stock: Decimal = Decimal("0"),
) -> Result[LedgerAudit]:
    """Replay a product's ledger and compare it with the stored snapshots.

    Each row's effect is applied to a running balance that starts at
    ``opening_stock``. Rows whose ``balance_after`` differs from the running
    balance are reported, as is a final balance that differs from the live
    stock. A reverted row that was not the product's latest shows up here.
    """
    snapshot = ledger_snapshot(context)
    product = snapshot.products.get(product_id)
    if product is None:
        return Err(NotFound("Product", product_id))

    running = opening_stock
    drifted: List[int] = []
    for transaction in snapshot.transactions:
        if transaction.product_id != product_id:
            continue
        running = apply_movement(running, transaction.transaction_type, transaction.quantity)
        if running != transaction.balance_after:
            drifted.append(transaction.transaction_id)

    return Ok(LedgerAudit(
        product_id=product_id,
        opening_stock=opening_stock,
        replayed_stock=running,
        live_stock=product.current_stock,
        drifted_transaction_ids=tuple(drifted),
    ))


def low_stock_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return products whose stock is at or below their minimum."""
    return [
        product
        for product in list_products(context)
        if product.current_stock <= product.min_stock
    ]


def expiry_urgency(days_left: int) -> ExpiryUrgency:
    if days_left <= 2:
        return ExpiryUrgency.CRITICAL
    if days_left <= 5:
        return ExpiryUrgency.URGENT
    return ExpiryUrgency.SOON


def days_until(expiry_iso: str, today: date) -> Optional[int]:
    """Days from ``today`` to an ISO date; ``None`` when the text is not a date."""
    try:
        expiry = date.fromisoformat(expiry_iso[:10])
    except ValueError:
        log.warning("Ignoring unparseable expiry date '%s'", expiry_iso)
        return None
    return (expiry - today).days


def near_expiry_products(
    context: RuntimeContext,
    days_window: Optional[int] = None,
    *,
    today: Optional[date] = None,
) -> List[ExpiringProduct]:
    """List products expiring between today and ``days_window`` days from now.

    Already expired products are left out. The window defaults to the
    configured ``ExpiryWindowDays``. Results are ordered soonest first.
    """
    window = context.settings.expiry_window_days if days_window is None else days_window
    today = today or date.today()
    expiring: List[ExpiringProduct] = []
    for product in list_products(context):
        if not product.expiry_date:
            continue
        days_left = days_until(product.expiry_date, today)
        if days_left is None or days_left < 0 or days_left > window:
            continue
        expiring.append(ExpiringProduct(product=product, days_left=days_left, urgency=expiry_urgency(days_left)))
    expiring.sort(key=lambda item: (item.days_left, item.product.product_id))
    return expiring


def near_expiry_batches(
    context: RuntimeContext,
    days_window: Optional[int] = None,
    *,
    today: Optional[date] = None,
) -> List[ExpiringBatch]:
    """List ``IN`` rows whose batch expires within ``days_window`` days.

    Batches are lot tags only; nothing tracks how much of a batch is left, so
    every incoming batch in the window is listed.
    """
    window = context.settings.expiry_window_days if days_window is None else days_window
    today = today or date.today()
    snapshot = ledger_snapshot(context)
    expiring: List[ExpiringBatch] = []
    for transaction in snapshot.transactions:
        if transaction.transaction_type is not TransactionType.IN or not transaction.batch_expiry_date:
            continue
        days_left = days_until(transaction.batch_expiry_date, today)
        if days_left is None or days_left < 0 or days_left > window:
            continue
        product = snapshot.products.get(transaction.product_id)
        expiring.append(ExpiringBatch(
            transaction=transaction,
            product_name=product.product_name if product else None,
            days_left=days_left,
            urgency=expiry_urgency(days_left),
        ))
    expiring.sort(key=lambda item: (item.days_left, item.transaction.transaction_id))
    return expiring


def transaction_day(transaction: data_manager.TransactionRow) -> date:
    """Local calendar day a ledger row belongs to."""
    return date.fromisoformat(transaction.transaction_date[:10])
