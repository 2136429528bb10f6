"""Data access layer for the sales bonus report.

This module provides low-level helpers that read datasets from disk and write
finished reports back out. Aggregation and bonus logic belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Dataset loading: turning workbook sheets or a JSON document into the
   immutable input rows consumed by the business layer.
3. Report persistence: writing report rows and awards to a fresh workbook.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import BonusMode, SheetName, TOP_PRODUCTS_LIMIT


CONFIG_FILE_NAME = "config.ini"
SELLERS_SHEET = SheetName.SELLERS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
PURCHASE_RECORDS_SHEET = SheetName.PURCHASE_RECORDS.value
PURCHASE_ITEMS_SHEET = SheetName.PURCHASE_ITEMS.value

REPORT_COLUMNS: Sequence[str] = (
    "SellerID",
    "Name",
    "Revenue",
    "Profit",
    "Bonus",
    "SaleCount",
    "TopProducts",
)
AWARD_COLUMNS: Sequence[str] = ("Category", "SellerID", "Bonus")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    revenue_function: str = "profit"
    bonus_mode: BonusMode = BonusMode.AGGREGATE
    bonus_rules: Tuple[str, ...] = ()
    top_products: int = TOP_PRODUCTS_LIMIT


@dataclass(frozen=True)
class Seller:
    """A seller as supplied by the dataset."""

    seller_id: str
    first_name: str
    last_name: str = ""

    @property
    def name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass(frozen=True)
class Customer:
    """A customer as supplied by the dataset."""

    customer_id: str
    first_name: str = ""
    last_name: str = ""


@dataclass(frozen=True)
class Product:
    """A catalogue entry keyed by SKU."""

    sku: str
    purchase_price: Decimal
    name: str = ""


@dataclass(frozen=True)
class LineItem:
    """One product line inside a purchase record."""

    sku: str
    sale_price: Decimal
    quantity: int
    discount: Decimal = Decimal("0")


@dataclass(frozen=True)
class PurchaseRecord:
    """A receipt issued by a seller to a customer."""

    receipt_id: str
    date: str
    seller_id: str
    customer_id: str
    total_amount: Decimal
    items: Tuple[LineItem, ...] = ()

    @property
    def month(self) -> str:
        return self.date[:7]


@dataclass(frozen=True)
class Dataset:
    """The full in-memory input of one report run."""

    sellers: Sequence[Seller]
    products: Sequence[Product]
    purchase_records: Sequence[PurchaseRecord]
    customers: Sequence[Customer] = field(default_factory=tuple)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Return the ``config.ini`` that drives a report run.

    An explicit path wins outright and is not checked here; :func:`read_config`
    reports it if it is missing. Without one, the working directory and then
    each parent is searched for ``CONFIG_FILE_NAME`` and the nearest hit is used,
    so reports can be run from any sub-folder of a sales project.

    Args:
        explicit_path (Path | None): ``--config`` value, if the user gave one.

    Returns:
        Path: The configuration file to read.

    Raises:
        FileNotFoundError: If no directory up to the filesystem root holds a
            ``config.ini``.
    """

    if explicit_path:
        return explicit_path

    start = Path.cwd()
    for directory in (start, *start.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"No {CONFIG_FILE_NAME} found in {start} or any parent directory")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Read the raw ``[System]`` and ``[Report]`` sections from disk.

    Nothing is validated here; :func:`parse_settings` decides which entries
    are mandatory.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Report]`` entries fall back to the
    package defaults: the profit revenue function, aggregate bonus mode with
    every registered rule, and a top-10 product list. Relative ``DataFile``
    entries are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing, or when
            ``BonusMode`` holds an unknown value.
        ValueError: If ``TopProducts`` is not an integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    revenue_function = parser.get("Report", "RevenueFunction", fallback="profit").strip()
    mode_raw = parser.get("Report", "BonusMode", fallback=BonusMode.AGGREGATE.value).strip().lower()
    rules_raw = parser.get("Report", "BonusRules", fallback="")
    top_products = parser.getint("Report", "TopProducts", fallback=TOP_PRODUCTS_LIMIT)

    try:
        bonus_mode = BonusMode(mode_raw)
    except ValueError as exc:
        raise KeyError(f"Unknown bonus mode in configuration: {mode_raw}") from exc

    bonus_rules = tuple(name.strip() for name in rules_raw.split(",") if name.strip())

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        revenue_function=revenue_function,
        bonus_mode=bonus_mode,
        bonus_rules=bonus_rules,
        top_products=top_products,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open a dataset workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ``.xlsx`` dataset.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def _iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_sellers(workbook: Workbook) -> Iterable[Seller]:
    """Iterate over the ``Sellers`` worksheet and yield typed records."""

    for raw in _iter_sheet_rows(workbook, SELLERS_SHEET):
        yield deserialize_seller(raw)


def iter_customers(workbook: Workbook) -> Iterable[Customer]:
    """Iterate over the ``Customers`` worksheet when the workbook has one.

    The sheet is optional; older workbooks without it simply yield nothing.
    """

    if CUSTOMERS_SHEET not in workbook.sheetnames:
        return
    for raw in _iter_sheet_rows(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_products(workbook: Workbook) -> Iterable[Product]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Header and fully empty rows are skipped. Each remaining row becomes a
    :class:`Product` with a :class:`~decimal.Decimal` purchase price.
    """

    for raw in _iter_sheet_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_purchase_items(workbook: Workbook) -> Iterable[Tuple[str, LineItem]]:
    """Stream ``(receipt_id, line_item)`` pairs from ``PurchaseItems``."""

    for raw in _iter_sheet_rows(workbook, PURCHASE_ITEMS_SHEET):
        yield deserialize_purchase_item(raw)


def iter_purchase_records(workbook: Workbook) -> Iterable[PurchaseRecord]:
    """Stream purchase records with their line items attached.

    Line items are joined to records through ``ReceiptID``; within a record
    they keep their worksheet order. Items whose receipt id matches no record
    indicate a corrupt workbook.

    Args:
        workbook (Workbook): Workbook containing both purchase sheets.

    Yields:
        PurchaseRecord: Normalized record in worksheet order.

    Raises:
        KeyError: If ``PurchaseItems`` references a receipt id that is absent
            from ``PurchaseRecords``.
    """

    items_by_receipt: Dict[str, List[LineItem]] = {}
    for receipt_id, item in iter_purchase_items(workbook):
        items_by_receipt.setdefault(receipt_id, []).append(item)

    records = [
        deserialize_purchase_record(raw, items_by_receipt)
        for raw in _iter_sheet_rows(workbook, PURCHASE_RECORDS_SHEET)
    ]
    orphans = set(items_by_receipt) - {record.receipt_id for record in records}
    if orphans:
        raise KeyError(
            f"Purchase items reference unknown receipt id(s): {', '.join(sorted(orphans))}"
        )
    yield from records


def load_workbook_dataset(workbook: Workbook) -> Dataset:
    """Assemble a :class:`Dataset` from every dataset sheet of ``workbook``."""

    dataset = Dataset(
        sellers=tuple(iter_sellers(workbook)),
        products=tuple(iter_products(workbook)),
        purchase_records=tuple(iter_purchase_records(workbook)),
        customers=tuple(iter_customers(workbook)),
    )
    log.debug(
        "Loaded workbook dataset: %d sellers, %d products, %d records",
        len(dataset.sellers),
        len(dataset.products),
        len(dataset.purchase_records),
    )
    return dataset


def load_json_dataset(data_file: Path) -> Dataset:
    """Read a JSON dataset document into a :class:`Dataset`.

    Floating point literals are parsed straight into
    :class:`~decimal.Decimal` so that no binary rounding sneaks into money
    values.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Dataset not found: {data_file}")
    payload = json.loads(data_file.read_text(encoding="utf-8"), parse_float=Decimal)
    return dataset_from_mapping(payload)


def dataset_from_mapping(payload: Mapping[str, Any]) -> Dataset:
    """Build a :class:`Dataset` from plain mappings using the JSON field names.

    Missing top-level collections become ``None`` so that the business layer
    can report exactly which field is absent. ``customers`` is optional.
    """

    def _rows(key: str, convert):
        raw = payload.get(key)
        if raw is None:
            return None
        return tuple(convert(entry) for entry in raw)

    return Dataset(
        sellers=_rows("sellers", _seller_from_mapping),
        products=_rows("products", _product_from_mapping),
        purchase_records=_rows("purchase_records", _record_from_mapping),
        customers=_rows("customers", _customer_from_mapping) or (),
    )


def load_dataset(data_file: Path) -> Dataset:
    """Load the dataset at ``data_file``, choosing the reader by extension."""

    data_file = Path(data_file)
    if data_file.suffix.lower() == ".json":
        dataset = load_json_dataset(data_file)
    else:
        dataset = load_workbook_dataset(open_workbook(data_file))
    log.info("Loaded dataset from '%s'", data_file)
    return dataset


def write_report_workbook(
    destination: Path,
    rows: Iterable[Mapping[str, Any]],
    awards: Iterable[Mapping[str, Any]] = (),
) -> Path:
    """Write report rows and bonus awards to a new workbook.

    Rows and awards are the plain mappings produced by the business layer's
    ``to_dict`` helpers. Headers are written in bold on both sheets.

    Args:
        destination (Path): Target ``.xlsx`` path; parents are created.
        rows (Iterable[Mapping[str, Any]]): Serialized report rows.
        awards (Iterable[Mapping[str, Any]]): Serialized bonus awards.

    Returns:
        Path: Resolved destination path.
    """

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    report_sheet = workbook.create_sheet(title=SheetName.REPORT.value)
    awards_sheet = workbook.create_sheet(title=SheetName.AWARDS.value)
    for sheet, columns in ((report_sheet, REPORT_COLUMNS), (awards_sheet, AWARD_COLUMNS)):
        for column_index, column_name in enumerate(columns, start=1):
            cell = sheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    for row in rows:
        report_sheet.append(serialize_report_row(row))
    for award in awards:
        awards_sheet.append(serialize_award(award))

    dest = Path(destination).expanduser().resolve()
    save_workbook(workbook, dest)
    log.info("Wrote report workbook '%s'", dest)
    return dest


def serialize_report_row(row: Mapping[str, Any]) -> list[object]:
    """Convert a report row mapping into the ``Report`` sheet column order.

    Top products are flattened to ``SKU x QTY`` pairs joined by commas.
    """

    top_products = ", ".join(
        f"{entry['sku']} x {entry['quantity']}" for entry in row["top_products"]
    )
    return [
        row["seller_id"],
        row["name"],
        row["revenue"],
        row["profit"],
        row["bonus"],
        row["sale_count"],
        top_products,
    ]


def serialize_award(award: Mapping[str, Any]) -> list[object]:
    """Convert an award mapping into the ``Awards`` sheet column order."""

    return [award["category"], award["seller_id"], award["bonus"]]


def deserialize_seller(raw_row: Sequence[object]) -> Seller:
    """Convert a raw worksheet row into a :class:`Seller`.

    Identifier and name cells are coerced to ``str`` so numeric-looking ids
    typed into Excel compare equal to the ids used on purchase records.
    """

    seller_id, first_name, last_name = (tuple(raw_row) + (None, None, None))[:3]
    return Seller(
        seller_id=str(seller_id),
        first_name=_text(first_name),
        last_name=_text(last_name),
    )


def deserialize_customer(raw_row: Sequence[object]) -> Customer:
    """Convert a raw worksheet row into a :class:`Customer`."""

    customer_id, first_name, last_name = (tuple(raw_row) + (None, None, None))[:3]
    return Customer(
        customer_id=str(customer_id),
        first_name=_text(first_name),
        last_name=_text(last_name),
    )


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a raw worksheet row into a :class:`Product`.

    The purchase price becomes a :class:`~decimal.Decimal`; blank prices are
    treated as zero cost.
    """

    sku, product_name, purchase_raw = (tuple(raw_row) + (None, None, None))[:3]
    return Product(
        sku=str(sku),
        purchase_price=_to_decimal(purchase_raw),
        name=_text(product_name),
    )


def deserialize_purchase_item(raw_row: Sequence[object]) -> Tuple[str, LineItem]:
    """Convert a raw ``PurchaseItems`` row into ``(receipt_id, LineItem)``."""

    receipt_id, sku, sale_raw, quantity_raw, discount_raw = (tuple(raw_row) + (None,) * 5)[:5]
    item = LineItem(
        sku=str(sku),
        sale_price=_to_decimal(sale_raw),
        quantity=int(quantity_raw or 0),
        discount=_to_decimal(discount_raw),
    )
    return str(receipt_id), item


def deserialize_purchase_record(raw_row: Sequence[object], items_by_receipt: Mapping[str, Sequence[LineItem]]) -> PurchaseRecord:
    """Convert a raw ``PurchaseRecords`` row into a :class:`PurchaseRecord`.

    Dates typed as real Excel dates come back from ``openpyxl`` as
    :class:`~datetime.datetime`; they are normalized to ISO-8601 text so the
    month bucket is always the first seven characters.
    """

    receipt_id, date_raw, seller_id, customer_id, total_raw = (tuple(raw_row) + (None,) * 5)[:5]
    receipt_id = str(receipt_id)
    return PurchaseRecord(
        receipt_id=receipt_id,
        date=_iso_date(date_raw),
        seller_id=str(seller_id),
        customer_id=str(customer_id),
        total_amount=_to_decimal(total_raw),
        items=tuple(items_by_receipt.get(receipt_id, ())),
    )


def _seller_from_mapping(entry: Mapping[str, Any]) -> Seller:
    return Seller(
        seller_id=str(entry["id"]),
        first_name=_text(entry.get("first_name")),
        last_name=_text(entry.get("last_name")),
    )


def _customer_from_mapping(entry: Mapping[str, Any]) -> Customer:
    return Customer(
        customer_id=str(entry["id"]),
        first_name=_text(entry.get("first_name")),
        last_name=_text(entry.get("last_name")),
    )


def _product_from_mapping(entry: Mapping[str, Any]) -> Product:
    return Product(
        sku=str(entry["sku"]),
        purchase_price=_to_decimal(entry.get("purchase_price")),
        name=_text(entry.get("name")),
    )


def _record_from_mapping(entry: Mapping[str, Any]) -> PurchaseRecord:
    items = tuple(
        LineItem(
            sku=str(item["sku"]),
            sale_price=_to_decimal(item.get("sale_price")),
            quantity=int(item.get("quantity", 0)),
            discount=_to_decimal(item.get("discount")),
        )
        for item in entry.get("items", ())
    )
    return PurchaseRecord(
        receipt_id=_text(entry.get("receipt_id")),
        date=_iso_date(entry.get("date")),
        seller_id=str(entry["seller_id"]),
        customer_id=str(entry["customer_id"]),
        total_amount=_to_decimal(entry.get("total_amount")),
        items=items,
    )


def _to_decimal(raw: object) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    if isinstance(raw, Decimal):
        return raw
    return Decimal(str(raw))


def _text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _iso_date(raw: object) -> str:
    if isinstance(raw, (datetime, date)):
        return raw.isoformat()
    return _text(raw)
