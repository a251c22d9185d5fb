"""Shared pytest fixtures and utilities for spa ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, List
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from spa_ledger import cli, constants, data_manager, ledger_service  # noqa: E402
from spa_ledger.models import Actor, Product, Service  # noqa: E402
from spa_ledger.setup_workbook import create_master_workbook  # noqa: E402
from spa_ledger.store import LedgerStore, Notification  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USER_ID = "u-front"
DEFAULT_USER_NAME = "Front Desk"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "UserId = {default_user_id}\n"
    "UserName = {default_user_name}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str
    default_user_id: str
    default_user_name: str


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
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "spa_ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Serenity Spa",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_user_id: str = DEFAULT_USER_ID,
        default_user_name: str = DEFAULT_USER_NAME,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                default_user_id=default_user_id,
                default_user_name=default_user_name,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
            default_user_id=default_user_id,
            default_user_name=default_user_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> ledger_service.RuntimeContext:
    """Load a runtime context backed by a real temporary workbook."""

    context = ledger_service.load_runtime_context(config_file)
    ledger_service.ensure_schema_version(context)
    return context


@pytest.fixture
def actor() -> Actor:
    return Actor(user_id=DEFAULT_USER_ID, user_name=DEFAULT_USER_NAME)


# ---------------------------------------------------------------------------
# Entity builders
# ---------------------------------------------------------------------------


@pytest.fixture
def add_product(runtime_context: ledger_service.RuntimeContext) -> Callable[..., Product]:
    """Insert a product through the ledger service and return it."""

    def _add(
        name: str = "Lavender Oil",
        *,
        stock: int = 10,
        sell_price: str = "20",
        cost_price: str = "8",
        category: str = "Oils",
        low_stock_threshold: int = 3,
    ) -> Product:
        return ledger_service.add_product(
            runtime_context,
            ledger_service.NewProductCommand(
                name=name,
                cost_price=Decimal(cost_price),
                sell_price=Decimal(sell_price),
                stock_quantity=stock,
                category=category,
                low_stock_threshold=low_stock_threshold,
            ),
        )

    return _add


@pytest.fixture
def add_service(runtime_context: ledger_service.RuntimeContext) -> Callable[..., Service]:
    def _add(name: str = "Swedish Massage", price: str = "80") -> Service:
        return ledger_service.add_service(runtime_context, name=name, price=Decimal(price))

    return _add


@pytest.fixture
def product_factory() -> Callable[..., Product]:
    """Build in-memory products with sensible defaults."""

    def _make(**overrides) -> Product:
        values = dict(
            id="P-1",
            name="Lavender Oil",
            description="",
            category="Oils",
            cost_price=Decimal("8"),
            sell_price=Decimal("20"),
            stock_quantity=10,
            low_stock_threshold=3,
        )
        values.update(overrides)
        return Product(**values)

    return _make

# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def notifications() -> List[Notification]:
    return []


@pytest.fixture
def store(
    runtime_context: ledger_service.RuntimeContext,
    actor: Actor,
    notifications: List[Notification],
) -> LedgerStore:
    """Return a store over a fresh workbook, recording notifications."""

    return LedgerStore(runtime_context, actor=actor, notifier=notifications.append)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="spa-ledger", description="Spa ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


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


# ---------------------------------------------------------------------------
# Mocked data service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "spa_ledger.xlsx",
        business_name="Serenity Spa",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_user_id=DEFAULT_USER_ID,
        default_user_name=DEFAULT_USER_NAME,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for tests that stub the data service."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> ledger_service.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return ledger_service.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 6, 15, 14, 30, tzinfo=UTC)
