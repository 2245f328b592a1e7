# woocatalog/imports/csv_reader.py
from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Dict, List, Union

import pandas as pd

logger = logging.getLogger("uvicorn.error")


class CsvParseError(Exception):
    pass


def read_rows(source: Union[str, Path, bytes]) -> List[Dict[str, str]]:
    """
    Parse a header-keyed CSV into a list of {column: cell} string maps.

    Everything is read as text (no NaN, no numeric coercion) so SKUs like
    "00123" and prices like "9.90" survive untouched. Header names are trimmed.
    """
    buf = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    try:
        df = pd.read_csv(
            buf,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            encoding="utf-8-sig",
        )
    except pd.errors.EmptyDataError as e:
        raise CsvParseError("CSV file is empty") from e
    except (pd.errors.ParserError, UnicodeDecodeError, OSError) as e:
        raise CsvParseError(f"Could not parse CSV: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    if not any(df.columns):
        raise CsvParseError("CSV header row is missing")
    df = df.fillna("")
    rows = df.to_dict(orient="records")
    logger.info("[IMPORT] parsed %d row(s), columns=%s", len(rows), list(df.columns))
    return rows
