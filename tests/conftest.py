"""Shared pytest fixtures and utilities for back-office ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure the source package is importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from backoffice_erp import cli, constants, core_logic, data_manager  # noqa: E402
from backoffice_erp.lifecycle import ActorContext  # noqa: E402
from backoffice_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ACTOR_ID = "clerk-1"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultActor = {default_actor_id}\n"
)


def make_product(
    product_id: str,
    *,
    selling_price: str = "100.00",
    cost_price: str = "60.00",
    available: str = "10",
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Build a catalog row with sensible defaults for tests."""

    return data_manager.ProductRow(
        product_id=product_id,
        sku=f"SKU-{product_id}",
        product_name=f"Product {product_id}",
        unit_of_measure="box",
        selling_price=Decimal(selling_price),
        cost_price=Decimal(cost_price),
        mrp=Decimal(selling_price) * 2,
        available_quantity=Decimal(available),
        is_active=is_active,
    )


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_actor_id: str
    schema_version: str
    business_name: str


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
        products: tuple[data_manager.ProductRow, ...] = (),
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, products=products, overwrite=True)
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
        business_name: str = "Test Traders",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_actor_id: str = DEFAULT_ACTOR_ID,
        products: tuple[data_manager.ProductRow, ...] = (),
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name, products=products)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                default_actor_id=default_actor_id,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_actor_id=default_actor_id,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def product_factory() -> Callable[..., data_manager.ProductRow]:
    """Expose :func:`make_product` to tests."""

    return make_product


@pytest.fixture
def stocked_config(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    """Config bundle whose workbook already lists a small catalog."""

    return config_factory(
        products=(
            make_product("P1", selling_price="1000.00", cost_price="700.00", available="10"),
            make_product("P2", selling_price="500.00", cost_price="300.00", available="20"),
            make_product("P3", selling_price="250.00", cost_price="150.00", available="5"),
        )
    )


@pytest.fixture
def runtime_context(stocked_config: ConfigBundle) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(stocked_config.config_path)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def clerk() -> ActorContext:
    """An ordinary, unprivileged back-office user."""

    return ActorContext(actor_id=DEFAULT_ACTOR_ID)


@pytest.fixture
def supervisor() -> ActorContext:
    """A user arriving through the adjustment workflow."""

    return ActorContext(actor_id="supervisor", privileged=True, display_name="Supervisor")


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="backoffice-cli", description="Back-office CLI")


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
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        business_name="Test Traders",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_actor_id=DEFAULT_ACTOR_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
