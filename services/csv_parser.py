# services/csv_parser.py
"""
Parser for CRM CSV exports.

Exports arrive with whatever delimiter the user's spreadsheet picked, so the
separator is sniffed from the header line, and fields may be double-quoted
with "" as an escaped quote.
"""
import logging
import re
from typing import Dict, List

logger = logging.getLogger(__name__)

# Priority order: ties go to the earlier separator.
CANDIDATE_SEPARATORS = (";", "\t", ",", "|")

_LINE_SPLIT = re.compile(r"\r?\n")


def detect_separator(header_line: str) -> str:
    """Pick the candidate separator that occurs most often in the header."""
    best = CANDIDATE_SEPARATORS[0]
    best_count = -1
    for sep in CANDIDATE_SEPARATORS:
        count = header_line.count(sep)
        if count > best_count:
            best, best_count = sep, count
    return best


def split_quoted(line: str, sep: str) -> List[str]:
    """
    Split a line on ``sep``, ignoring separators inside double quotes.

    Quote characters are consumed; a doubled quote inside a quoted field
    yields a literal quote.
    """
    out: List[str] = []
    current = []
    in_quotes = False
    i = 0
    n = len(line)
    while i < n:
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < n and line[i + 1] == '"':
                current.append('"')
                i += 2
                continue
            in_quotes = not in_quotes
        elif ch == sep and not in_quotes:
            out.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    out.append("".join(current))
    return out


def _clean(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]
    return value


def parse_csv_text(text: str) -> List[Dict[str, str]]:
    """
    Parse decoded CSV text into a list of row dicts keyed by header name.

    Empty lines are skipped, short rows are padded with "" and rows where
    every field is blank are dropped.
    """
    lines = [line for line in _LINE_SPLIT.split(text or "") if line]
    if not lines:
        return []

    sep = detect_separator(lines[0])
    headers = [_clean(h) for h in split_quoted(lines[0], sep)]
    logger.debug(f"Detected separator {sep!r} with {len(headers)} columns")

    rows: List[Dict[str, str]] = []
    for line in lines[1:]:
        values = split_quoted(line, sep)
        row = {}
        for idx, header in enumerate(headers):
            row[header] = _clean(values[idx]) if idx < len(values) else ""
        if any(v.strip() for v in row.values()):
            rows.append(row)
    return rows
