"""Read uploaded spreadsheets (xlsx or csv) into row dictionaries.

Uploads arrive either as raw bytes (CLI, multipart) or as base64 text inside
a JSON body. Only the first worksheet is read; every cell is read as text so
barcodes never turn into floats.
"""

import base64
import binascii
import csv
import io
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from boekenbaai.errors import SpreadsheetError

logger = logging.getLogger(__name__)

EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}
CSV_SUFFIXES = {".csv", ".txt"}


def decode_upload(content: Union[bytes, str]) -> bytes:
    """Return the raw file bytes; text is treated as base64 (data URLs allowed)."""
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    text = (content or "").strip()
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SpreadsheetError("The uploaded file is not valid base64") from exc


def _is_excel(data: bytes, filename: Optional[str]) -> bool:
    if filename:
        suffix = Path(filename).suffix.lower()
        if suffix in EXCEL_SUFFIXES:
            return True
        if suffix in CSV_SUFFIXES:
            return False
    # xlsx files are zip archives
    return data[:2] == b"PK"


def _read_frame(data: bytes, filename: Optional[str]) -> pd.DataFrame:
    if _is_excel(data, filename):
        try:
            workbook = pd.ExcelFile(io.BytesIO(data))
        except Exception as exc:
            raise SpreadsheetError("The Excel file could not be read") from exc
        if not workbook.sheet_names:
            raise SpreadsheetError("The file contains no worksheet")
        try:
            return workbook.parse(workbook.sheet_names[0], dtype=object)
        except Exception as exc:
            raise SpreadsheetError("The worksheet could not be read") from exc

    try:
        return pd.read_csv(io.BytesIO(data), dtype=str, sep=None, engine="python", encoding="utf-8-sig")
    except pd.errors.EmptyDataError as exc:
        raise SpreadsheetError("The worksheet is empty") from exc
    except (csv.Error, pd.errors.ParserError, UnicodeDecodeError, ValueError) as exc:
        raise SpreadsheetError("The CSV file could not be read") from exc


def _cell(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def read_rows(content: Union[bytes, str], filename: Optional[str] = None) -> List[Dict[str, Any]]:
    """Read the first worksheet into a list of ``{header: text}`` rows.

    Blank cells become ``""`` and fully blank rows are dropped. Raises
    ``SpreadsheetError`` when the file cannot be read or holds no rows.
    """
    data = decode_upload(content)
    if not data:
        raise SpreadsheetError("No file received")

    frame = _read_frame(data, filename).fillna("")
    rows = []
    for record in frame.to_dict(orient="records"):
        row = {str(key).strip(): _cell(value) for key, value in record.items()}
        if any(row.values()):
            rows.append(row)

    if not rows:
        raise SpreadsheetError("The worksheet is empty")
    logger.debug(f"Read {len(rows)} rows from {filename or 'upload'}")
    return rows


def read_file(path: Union[str, Path]) -> List[Dict[str, Any]]:
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise SpreadsheetError(f"Cannot read {path}: {exc}") from exc
    return read_rows(data, path.name)
