"""Tabular file parsing for batch uploads.

Supports CSV and Excel (.xlsx). Every cell is read as text; typed conversion
happens later in the normalization step so a single bad cell never fails the
whole file.
"""
from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)


class FileType(str, Enum):
    """Supported file types."""
    CSV = "csv"
    EXCEL = "excel"
    UNKNOWN = "unknown"


class ParseError(Exception):
    """Raised when a tabular file cannot be read."""
    pass


def detect_file_type(filename: str) -> FileType:
    """Detect file type from the filename extension."""
    filename_lower = filename.lower()

    if filename_lower.endswith('.csv'):
        return FileType.CSV
    elif filename_lower.endswith('.xlsx'):
        return FileType.EXCEL

    return FileType.UNKNOWN


def _to_records(df: pd.DataFrame) -> list[dict[str, str]]:
    df.columns = [str(column).strip() for column in df.columns]
    df = df.fillna("")
    return df.to_dict('records')


def parse_csv(path: str | Path) -> list[dict[str, str]]:
    """Parse CSV file into row dictionaries.

    Raises:
        ParseError: If CSV parsing fails
    """
    try:
        df = pd.read_csv(path, encoding='utf-8', dtype=str, keep_default_na=False)
    except Exception as e:
        logger.error(f"CSV parsing failed: {e}")
        raise ParseError(f"Failed to parse CSV: {e}") from e

    if df.empty:
        logger.warning("CSV file has a header but no data rows")
        return []

    logger.info(f"Parsed CSV with {len(df)} rows and {len(df.columns)} columns")
    return _to_records(df)


def parse_excel(path: str | Path, sheet_name: str | int = 0) -> list[dict[str, str]]:
    """Parse Excel file into row dictionaries.

    Args:
        path: File location
        sheet_name: Sheet name or index (default: first sheet)

    Raises:
        ParseError: If Excel parsing fails
    """
    try:
        df = pd.read_excel(path, sheet_name=sheet_name, engine='openpyxl', dtype=str, keep_default_na=False)
    except Exception as e:
        logger.error(f"Excel parsing failed: {e}")
        raise ParseError(f"Failed to parse Excel: {e}") from e

    if len(df.columns) == 0:
        raise ParseError("Excel sheet has no header row")
    if df.empty:
        logger.warning("Excel sheet has a header but no data rows")
        return []

    logger.info(f"Parsed Excel with {len(df)} rows and {len(df.columns)} columns")
    return _to_records(df)


def parse_file(path: str | Path) -> list[dict[str, str]]:
    """Parse a staged upload based on its extension.

    Raises:
        ParseError: If file type unsupported or parsing fails
    """
    path = Path(path)
    if not path.is_file():
        raise ParseError(f"File not found: {path}")

    file_type = detect_file_type(path.name)

    if file_type == FileType.CSV:
        return parse_csv(path)
    elif file_type == FileType.EXCEL:
        return parse_excel(path)
    else:
        raise ParseError(f"Unsupported file type: {path.name}")
