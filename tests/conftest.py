"""Shared pytest fixtures and utilities for the sales bonus tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sales_bonus import constants, core_logic, data_manager  # noqa: E402
from sales_bonus.data_manager import (  # noqa: E402
    Customer,
    Dataset,
    LineItem,
    Product,
    PurchaseRecord,
    Seller,
)
from sales_bonus.setup_excel import create_dataset_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Report]\n"
    "RevenueFunction = {revenue_function}\n"
    "BonusMode = {bonus_mode}\n"
    "BonusRules = {bonus_rules}\n"
    "TopProducts = {top_products}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_file: Path


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


# ---------------------------------------------------------------------------
# Dataset fixtures
# ---------------------------------------------------------------------------


def item(sku: str, sale_price: str, quantity: int, discount: str = "0") -> LineItem:
    """Shorthand for a line item with decimal prices."""

    return LineItem(sku=sku, sale_price=Decimal(sale_price), quantity=quantity, discount=Decimal(discount))


def record(
    receipt_id: str,
    date: str,
    seller_id: str,
    customer_id: str,
    total: str,
    items: Sequence[LineItem],
) -> PurchaseRecord:
    """Shorthand for a purchase record."""

    return PurchaseRecord(
        receipt_id=receipt_id,
        date=date,
        seller_id=seller_id,
        customer_id=customer_id,
        total_amount=Decimal(total),
        items=tuple(items),
    )


@pytest.fixture
def make_item() -> Callable[..., LineItem]:
    """Expose :func:`item` to test modules."""

    return item


@pytest.fixture
def make_record() -> Callable[..., PurchaseRecord]:
    """Expose :func:`record` to test modules."""

    return record


@pytest.fixture
def sample_dataset() -> Dataset:
    """Three sellers, two customers, three products, three receipts.

    Seller S3 never sells anything. Expected totals:

    * S1: revenue 130, profit 65, 3 line items over 2 receipts.
    * S2: revenue 90, profit 50, 1 line item.
    * C1: revenue 190 (served by S1 and S2); C2: revenue 30 (S1 only).
    """

    return Dataset(
        sellers=(
            Seller("S1", "Ivan", "Petrov"),
            Seller("S2", "Anna", "Smirnova"),
            Seller("S3", "Oleg", "Ivanov"),
        ),
        products=(
            Product("P1", Decimal("10"), "Coffee beans"),
            Product("P2", Decimal("5"), "Paper cups"),
            Product("P3", Decimal("20"), "Grinder"),
        ),
        purchase_records=(
            record("R1", "2024-01-10", "S1", "C1", "100", [item("P1", "20", 2), item("P2", "10", 6)]),
            record("R2", "2024-02-05", "S2", "C1", "90", [item("P3", "50", 2, "10")]),
            record("R3", "2024-02-20", "S1", "C2", "30", [item("P2", "10", 3)]),
        ),
        customers=(
            Customer("C1", "Maria", "Orlova"),
            Customer("C2", "Petr", "Sidorov"),
        ),
    )


@pytest.fixture
def sample_stats(sample_dataset: Dataset) -> core_logic.SalesStatistics:
    """Statistics of :func:`sample_dataset` using the profit function."""

    return core_logic.aggregate_statistics(
        sample_dataset.purchase_records,
        core_logic.calculate_item_profit,
        sample_dataset.products,
    )


@pytest.fixture
def sample_context(sample_dataset: Dataset, sample_stats: core_logic.SalesStatistics) -> core_logic.BonusContext:
    """Bonus context for :func:`sample_dataset`."""

    return core_logic.build_bonus_context(sample_dataset, sample_stats, core_logic.calculate_item_profit)


# ---------------------------------------------------------------------------
# Workbook and config fixtures
# ---------------------------------------------------------------------------


def write_dataset_workbook(destination: Path, dataset: Dataset) -> Path:
    """Create a dataset workbook and fill it with the rows of ``dataset``."""

    create_dataset_workbook(destination, overwrite=True)
    workbook = openpyxl.load_workbook(destination)
    for seller in dataset.sellers:
        workbook[constants.SheetName.SELLERS.value].append([seller.seller_id, seller.first_name, seller.last_name])
    for customer in dataset.customers:
        workbook[constants.SheetName.CUSTOMERS.value].append(
            [customer.customer_id, customer.first_name, customer.last_name]
        )
    for product in dataset.products:
        workbook[constants.SheetName.PRODUCTS.value].append([product.sku, product.name, str(product.purchase_price)])
    for entry in dataset.purchase_records:
        workbook[constants.SheetName.PURCHASE_RECORDS.value].append(
            [entry.receipt_id, entry.date, entry.seller_id, entry.customer_id, str(entry.total_amount)]
        )
        for line in entry.items:
            workbook[constants.SheetName.PURCHASE_ITEMS.value].append(
                [entry.receipt_id, line.sku, str(line.sale_price), line.quantity, str(line.discount)]
            )
    workbook.save(destination)
    return destination


@pytest.fixture
def dataset_workbook(tmp_path: Path, sample_dataset: Dataset) -> Path:
    """Workbook on disk holding :func:`sample_dataset`."""

    return write_dataset_workbook(tmp_path / f"dataset_{uuid.uuid4().hex}.xlsx", sample_dataset)


@pytest.fixture
def config_factory(tmp_path: Path, dataset_workbook: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes ``config.ini`` files on demand."""

    def _create_config(
        *,
        data_file: Optional[Path] = None,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        revenue_function: str = "profit",
        bonus_mode: str = "aggregate",
        bonus_rules: str = "",
        top_products: int = constants.TOP_PRODUCTS_LIMIT,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        target = dataset_workbook if data_file is None else data_file
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=target,
                schema_version=schema_version,
                revenue_function=revenue_function,
                bonus_mode=bonus_mode,
                bonus_rules=bonus_rules,
                top_products=top_products,
            )
        )
        return ConfigBundle(directory=bundle_dir, config_path=config_path, data_file=target)

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
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Default configuration settings for option-building tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "dataset.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
