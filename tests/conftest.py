"""Shared pytest fixtures and utilities for stockbook tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stockbook import cli, constants, core_logic, data_manager  # noqa: E402
from stockbook.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "AutoSave = {autosave}\n\n"
    "[Alerts]\n"
    "ExpiryWindowDays = {expiry_window_days}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "stockbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Corner Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        autosave: bool = True,
        expiry_window_days: int = 7,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                autosave="true" if autosave else "false",
                expiry_window_days=expiry_window_days,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def memory_context(config_factory: Callable[..., ConfigBundle]) -> core_logic.RuntimeContext:
    """Runtime context with auto-save disabled, for tests that write a lot."""

    bundle = config_factory(autosave=False)
    return core_logic.load_runtime_context(bundle.config_path)


# ---------------------------------------------------------------------------
# Ledger helpers
# ---------------------------------------------------------------------------


def make_product(product_id: str = "P001", **overrides: object) -> data_manager.ProductRow:
    """Build a catalog record with sensible defaults."""

    values: dict[str, object] = {
        "product_id": product_id,
        "product_name": f"Product {product_id}",
        "unit": "pcs",
        "current_stock": Decimal("10"),
        "min_stock": Decimal("2"),
        "purchase_price": Decimal("60"),
        "selling_price": Decimal("100"),
        "category": None,
        "expiry_date": None,
    }
    values.update(overrides)
    return data_manager.ProductRow(**values)  # type: ignore[arg-type]


def at(day: str, hour: int = 12, minute: int = 0) -> datetime:
    """Return a naive local timestamp on the ISO ``day``."""

    return datetime.fromisoformat(day).replace(hour=hour, minute=minute)


def movement(
    product_id: str,
    transaction_type: constants.TransactionType,
    quantity: object,
    *,
    when: datetime | None = None,
    notes: str | None = None,
    **extra: object,
) -> core_logic.StockCommand:
    """Build a :class:`~stockbook.core_logic.StockCommand` for tests."""

    return core_logic.StockCommand(
        product_id=product_id,
        transaction_type=transaction_type,
        quantity=quantity,  # type: ignore[arg-type]
        notes=notes,
        timestamp=when,
        **extra,  # type: ignore[arg-type]
    )


@pytest.fixture
def seed_product() -> Callable[..., data_manager.ProductRow]:
    """Register a product through the ledger API and return it."""

    def _seed(context: core_logic.RuntimeContext, product_id: str = "P001", **overrides: object) -> data_manager.ProductRow:
        return core_logic.add_product(context, make_product(product_id, **overrides)).unwrap()

    return _seed


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stockbook-test", description="stockbook CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("ledger-test")

    spec = cli.CommandSpec(
        name="ledger-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "ledger-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
