"""Payload helpers shared by the extraction strategies."""
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone
import csv
import io
import json
import re

from .errors import ParseError

MIN_EXPORT_LENGTH = 50
HTML_MARKERS = ('<!doctype', '<html')

# /Date(1700000000000)/ or /Date(1700000000000-0500)/
PORTAL_DATE = re.compile(r"/Date\((-?\d+)([+-]\d{4})?\)/")
OUTPUT_DATE_FORMAT = "%Y-%m-%d"

# Keys the portal wraps JSON row lists in
ROW_CONTAINER_KEYS = ('data', 'Data', 'rows', 'Rows', 'aaData', 'Items', 'items', 'Result', 'result')


def looks_like_html(text: str) -> bool:
    head = (text or '').lstrip()[:2000].lower()
    return any(marker in head for marker in HTML_MARKERS)


def is_tabular_payload(text: Optional[str], min_length: int = MIN_EXPORT_LENGTH) -> bool:
    """Non-empty, not an HTML document, and longer than ``min_length``."""
    if not text or not text.strip():
        return False
    if looks_like_html(text):
        return False
    return len(text.strip()) > min_length


def parse_delimited(text: str) -> List[Dict[str, Any]]:
    """Parse a CSV/TSV export. The first line is the header."""
    body = (text or '').strip().lstrip('\ufeff')
    if not body:
        return []
    header = body.splitlines()[0]
    delimiter = '\t' if header.count('\t') > header.count(',') else ','
    reader = csv.DictReader(io.StringIO(body), delimiter=delimiter)
    if not reader.fieldnames:
        raise ParseError("Export has no header row")
    rows = []
    for row in reader:
        if not any((value or '').strip() for value in row.values() if isinstance(value, str)):
            continue
        rows.append({(key or '').strip(): (value or '').strip() if isinstance(value, str) else value
                     for key, value in row.items() if key is not None})
    return rows


def parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Expected JSON payload: {e}")


def json_rows(payload: Any) -> List[Dict[str, Any]]:
    """Pull the row list out of a JSON payload, unwrapping common containers."""
    if isinstance(payload, str):
        payload = parse_json(payload)
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, dict):
        for key in ROW_CONTAINER_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return [row for row in value if isinstance(row, dict)]
            if isinstance(value, dict):
                return json_rows(value)
        return []
    raise ParseError(f"Unexpected JSON payload type: {type(payload).__name__}")


def json_total(payload: Any) -> Optional[int]:
    """Total row count a paged JSON response advertises, if any."""
    if not isinstance(payload, dict):
        return None
    for key in ('TotalCount', 'totalCount', 'Total', 'total', 'iTotalRecords', 'recordsTotal'):
        value = payload.get(key)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def _format_portal_date(match: re.Match) -> str:
    millis = int(match.group(1))
    moment = datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=millis)
    offset = match.group(2)
    if offset:
        sign = -1 if offset[0] == '-' else 1
        moment += sign * timedelta(hours=int(offset[1:3]), minutes=int(offset[3:5]))
    return moment.strftime(OUTPUT_DATE_FORMAT)


def normalize_portal_date(value: Any) -> Any:
    """Rewrite ``/Date(<epoch-ms>)/`` to a calendar date. Anything else,
    including already-normalised dates, passes through unchanged."""
    if not isinstance(value, str) or '/Date(' not in value:
        return value
    return PORTAL_DATE.sub(_format_portal_date, value)


def normalize_row_dates(row: Dict[str, Any]) -> Dict[str, Any]:
    return {key: normalize_portal_date(value) for key, value in row.items()}


def pick(row: Dict[str, Any], *keys: str, default: Any = '') -> Any:
    """First present, non-empty value among ``keys`` (case-insensitive)."""
    lowered = {str(k).lower().replace(' ', '').replace('_', ''): v for k, v in row.items()}
    for key in keys:
        value = lowered.get(key.lower().replace(' ', '').replace('_', ''))
        if value not in (None, ''):
            return value
    return default
