"""
Spreadsheet reader/writer for settlement uploads and analysis exports.

Reading keeps the original header text untouched (the reconciliation engine
resolves columns itself); writing puts one table per sheet.
"""

import io
import json
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Union

import numpy as np
import pandas as pd

from settlement_config import EMPTY_SHEET_ROW, SHEET_NAME_MAX
from settlement_errors import UnsupportedFileError
from settlement_fields import is_blank

logger = logging.getLogger(__name__)

EXCEL_SUFFIXES = {".xlsx", ".xlsm"}
DELIMITED_SUFFIXES = {".txt", ".tsv"}


def _cell(value):
    """Plain Python value for a DataFrame cell (None for NaN/NaT)."""
    if value is None:
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return None if pd.isna(value) else value.isoformat()
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


def frame_to_records(df: pd.DataFrame) -> List[Dict]:
    """DataFrame -> list of dicts keyed by the original header text."""
    columns = [str(c) for c in df.columns]
    records = []
    for values in df.itertuples(index=False, name=None):
        records.append({col: _cell(v) for col, v in zip(columns, values)})
    return records


def _read_csv(path: Path) -> pd.DataFrame:
    # first try comma; a single column with semicolons in the header means ';' exports
    df = pd.read_csv(path, dtype=str, encoding="utf-8-sig", keep_default_na=False)
    if df.shape[1] == 1 and ";" in str(df.columns[0]):
        df = pd.read_csv(path, sep=";", dtype=str, encoding="utf-8-sig", keep_default_na=False)
    return df


def read_records(path: Union[str, Path]) -> List[Dict]:
    """Read the first sheet (or a delimited file) into raw records."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in EXCEL_SUFFIXES:
        df = pd.read_excel(path, sheet_name=0, dtype=object, engine="openpyxl")
    elif suffix == ".csv":
        df = _read_csv(path)
    elif suffix in DELIMITED_SUFFIXES:
        # Amazon settlement flat files are tab-delimited
        df = pd.read_csv(path, sep="\t", dtype=str, encoding="utf-8-sig", keep_default_na=False)
    else:
        raise UnsupportedFileError(path)

    if not df.empty:
        # blank lines come back as "" from the text readers
        df = df[~df.apply(lambda col: col.map(is_blank)).all(axis=1)]
    records = frame_to_records(df)
    logger.info(f"Read {len(records)} rows x {len(df.columns)} columns from {path.name}")
    return records


def _sheet_frame(rows: List[Dict]) -> pd.DataFrame:
    if not rows:
        return pd.DataFrame([EMPTY_SHEET_ROW])
    flat = []
    for row in rows:
        flat.append({
            k: json.dumps(v, default=str) if isinstance(v, (dict, list)) else v
            for k, v in row.items()
        })
    return pd.DataFrame(flat)


def sheet_names(names: List[str]) -> List[str]:
    """Excel-safe sheet names: at most 31 characters and unique."""
    used = set()
    result = []
    for name in names:
        candidate = name[:SHEET_NAME_MAX]
        n = 1
        while candidate in used:
            suffix = f"_{n}"
            candidate = name[:SHEET_NAME_MAX - len(suffix)] + suffix
            n += 1
        used.add(candidate)
        result.append(candidate)
    return result


def write_workbook(tables: Dict[str, List[Dict]], target) -> None:
    """Write one sheet per table to a path or binary buffer."""
    names = list(tables)
    with pd.ExcelWriter(target, engine="openpyxl") as writer:
        for name, sheet in zip(names, sheet_names(names)):
            _sheet_frame(tables[name]).to_excel(writer, sheet_name=sheet, index=False)


def workbook_bytes(tables: Dict[str, List[Dict]]) -> bytes:
    output = io.BytesIO()
    write_workbook(tables, output)
    return output.getvalue()


def output_filename(original_name: str) -> str:
    """'settlement_2024_01.txt' -> 'settlement_2024_01_analyzed.xlsx'."""
    base = Path(original_name or "").name.split(".")[0] or "settlement_file"
    return f"{base}_analyzed.xlsx"
