"""Data access layer for the retail ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Key-value storage: loading and saving one JSON-compatible document per
   storage key. Products and customers live on their own typed sheets so the
   workbook stays readable; every other key is stored as JSON text on the
   ``Documents`` sheet.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import STORAGE_KEYS, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
DOCUMENTS_SHEET = SheetName.DOCUMENTS.value

# Excel caps a cell at 32,767 characters; documents are split below that.
PAYLOAD_PART_SIZE = 32_000

PRODUCT_COLUMNS: Sequence[str] = ("ProductID", "ProductName", "Quantity", "Price", "Cost", "MinStock", "ImageUrl")
CUSTOMER_COLUMNS: Sequence[str] = ("CustomerID", "CustomerName", "Phone", "Address")
DOCUMENT_COLUMNS: Sequence[str] = ("Key", "Part", "Payload", "UpdatedAt")

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: PRODUCT_COLUMNS,
    CUSTOMERS_SHEET: CUSTOMER_COLUMNS,
    DOCUMENTS_SHEET: DOCUMENT_COLUMNS,
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_user: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Required entries are validated by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored at ``base_path`` (or the
    current working directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_user=default_user,
    )


def create_workbook() -> Workbook:
    """Return an empty workbook carrying the ledger sheets and headers."""

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for sheet_name, columns in SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
    return workbook


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and verify it carries the expected sheets.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If one of the ledger sheets is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook '{data_file}' is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def locate_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> List[int]:
    """Return every 1-based row index whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    return [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == key_value
    ]


def load_document(workbook: Workbook, key: str) -> Optional[Any]:
    """Return the document stored under ``key`` or ``None`` when absent.

    Products and customers are rebuilt from their typed sheets and always
    come back as a (possibly empty) list. Other keys are reassembled from
    their ordered payload parts on the ``Documents`` sheet.

    Raises:
        ValueError: If a stored payload is not valid JSON.
    """

    if key == "products":
        return [deserialize_product_row(raw) for raw in _iter_data_rows(workbook[PRODUCTS_SHEET])]
    if key == "customers":
        return [deserialize_customer_row(raw) for raw in _iter_data_rows(workbook[CUSTOMERS_SHEET])]

    parts: List[tuple[int, str]] = []
    for raw in _iter_data_rows(workbook[DOCUMENTS_SHEET]):
        row_key, part, payload, _ = _pad(raw, 4)
        if row_key == key:
            parts.append((int(part or 0), "" if payload is None else str(payload)))
    if not parts:
        return None

    text = "".join(payload for _, payload in sorted(parts))
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Stored document '{key}' is not valid JSON: {exc}") from exc


def load_documents(workbook: Workbook, keys: Iterable[str] = STORAGE_KEYS) -> Dict[str, Any]:
    """Load every present key into a mapping suitable for state decoding."""

    documents: Dict[str, Any] = {}
    for key in keys:
        document = load_document(workbook, key)
        if document is not None:
            documents[key] = document
    return documents


def save_document(workbook: Workbook, key: str, document: Any, *, when: Optional[datetime] = None) -> None:
    """Replace whatever is stored under ``key`` with ``document``.

    The write is a full replacement: existing rows for the key are deleted
    before the new rows are appended.

    Args:
        workbook (Workbook): Workbook to modify in memory.
        key (str): Storage key.
        document (Any): JSON-compatible value. Products and customers must be
            lists of entity documents.
        when (datetime | None): Timestamp recorded in ``UpdatedAt``.
    """

    if key == "products":
        _replace_rows(workbook[PRODUCTS_SHEET], [serialize_product_document(item) for item in document])
        return
    if key == "customers":
        _replace_rows(workbook[CUSTOMERS_SHEET], [serialize_customer_document(item) for item in document])
        return

    sheet = workbook[DOCUMENTS_SHEET]
    for row_index in reversed(locate_rows(workbook, DOCUMENTS_SHEET, "Key", key)):
        sheet.delete_rows(row_index)

    text = json.dumps(document, ensure_ascii=False)
    stamp = (when or datetime.now(UTC)).isoformat()
    chunks = [text[i:i + PAYLOAD_PART_SIZE] for i in range(0, len(text), PAYLOAD_PART_SIZE)] or [""]
    for part, chunk in enumerate(chunks):
        sheet.append([key, part, chunk, stamp])
    log.debug("Stored document '%s' in %d part(s)", key, len(chunks))


def serialize_product_document(document: Mapping[str, Any]) -> list[object]:
    """Arrange a product document as ``[ProductID, ProductName, Quantity,
    Price, Cost, MinStock, ImageUrl]``; money stays :class:`~decimal.Decimal`."""

    return [
        document["id"],
        document["name"],
        int(document.get("quantity") or 0),
        Decimal(str(document.get("price", 0))),
        Decimal(str(document.get("cost", 0))),
        int(document.get("minStock") or 0),
        document.get("imageUrl"),
    ]


def deserialize_product_row(raw_row: Sequence[object]) -> Dict[str, Any]:
    """Convert a ``Products`` row into a product document.

    Identifiers and names are coerced to ``str`` so Excel's number guessing
    does not leak into ids; money comes back as decimal text.
    """

    product_id, product_name, quantity_raw, price_raw, cost_raw, min_stock_raw, image_url = _pad(raw_row, 7)
    document: Dict[str, Any] = {
        "id": str(product_id),
        "name": "" if product_name is None else str(product_name),
        "quantity": int(quantity_raw) if quantity_raw is not None else 0,
        "price": str(Decimal(str(price_raw))) if price_raw is not None else "0",
        "cost": str(Decimal(str(cost_raw))) if cost_raw is not None else "0",
        "minStock": int(min_stock_raw) if min_stock_raw is not None else 0,
    }
    if image_url is not None:
        document["imageUrl"] = str(image_url)
    return document


def serialize_customer_document(document: Mapping[str, Any]) -> list[object]:
    return [document["id"], document["name"], document.get("phone"), document.get("address")]


def deserialize_customer_row(raw_row: Sequence[object]) -> Dict[str, Any]:
    customer_id, customer_name, phone, address = _pad(raw_row, 4)
    document: Dict[str, Any] = {
        "id": str(customer_id),
        "name": "" if customer_name is None else str(customer_name),
    }
    if phone is not None:
        document["phone"] = str(phone)
    if address is not None:
        document["address"] = str(address)
    return document


def _header_map(sheet: Worksheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _iter_data_rows(sheet: Worksheet) -> Iterable[tuple]:
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _replace_rows(sheet: Worksheet, rows: Iterable[Sequence[object]]) -> None:
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for row in rows:
        sheet.append(list(row))


def _pad(raw_row: Sequence[object], width: int) -> tuple:
    values = tuple(raw_row)[:width]
    return values + (None,) * (width - len(values))


__all__: list[str] = [
    "ConfigSettings",
    "create_workbook",
    "find_config_file",
    "load_document",
    "load_documents",
    "locate_rows",
    "open_workbook",
    "parse_settings",
    "read_config",
    "refresh_workbook",
    "save_document",
    "save_workbook",
]

