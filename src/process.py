import logging
from dataclasses import asdict
import polars as pl
from config import EVENT_COLS

logger = logging.getLogger(__name__)

# Decoded field names -> sink column names
RENAME_MAP = {"tokenId": "token_id", "ethAddress": "eth_address"}


def _columns(rows):
    columns = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def _frame(rows, columns=None, as_text=True) -> pl.DataFrame:
    """Frame over the given columns; missing keys become nulls."""
    rows = list(rows)
    columns = columns or _columns(rows)
    if as_text:
        data = [{c: (None if row.get(c) is None else str(row.get(c))) for c in columns} for row in rows]
        return pl.DataFrame(data, schema={c: pl.Utf8 for c in columns})
    return pl.DataFrame([{c: row.get(c) for c in columns} for row in rows])


def clean_rows(rows, columns=None) -> list:
    """Drops rows with an empty, null or missing value in any column. Order is kept."""
    rows = list(rows)
    df = _frame(rows, columns)
    if df.is_empty() or not df.columns:
        return []

    keep = df.with_row_index("_idx").filter(
        pl.all_horizontal([pl.col(c).is_not_null() & (pl.col(c) != "") for c in df.columns])
    )["_idx"].to_list()

    dropped = len(rows) - len(keep)
    if dropped > 0:
        logger.info(f"Dropped {dropped} rows with empty values.")
    return [rows[i] for i in keep]


def rename_rows(rows, mapping=None) -> list:
    mapping = RENAME_MAP if mapping is None else mapping
    return [{mapping.get(k, k): v for k, v in row.items()} for row in rows]


def format_events(rows) -> list:
    """clean -> rename, the pipeline applied to decoded rows before they reach a sink."""
    return rename_rows(clean_rows(rows))


def events_to_rows(events) -> list:
    """MintEvents to decoded-name rows (tokenId / ethAddress), ready for format_events."""
    inverse = {v: k for k, v in RENAME_MAP.items()}
    return [{inverse.get(k, k): v for k, v in asdict(e).items()} for e in events]


def to_csv(rows, columns=None, header=None) -> str:
    """Header line followed by one line per row.

    Values are only quoted when they contain a separator, quote or newline,
    so numeric and hex fields come out unquoted.
    """
    columns = columns or EVENT_COLS
    df = _frame(rows, columns)
    if header is not None:
        df = df.rename(dict(zip(columns, header)))
    return df.write_csv()


def to_ndjson(rows, columns=None) -> str:
    rows = list(rows)
    if not rows:
        return ""
    return _frame(rows, columns, as_text=False).write_ndjson()
