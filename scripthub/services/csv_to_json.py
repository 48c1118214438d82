"""
CSV to JSON - header cleanup, type detection and array/object output.
"""

import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from scripthub.errors import ValidationError

logger = logging.getLogger("scripthub.csv")

_INT_RE = re.compile(r"^-?\d+$")
_FLOAT_RE = re.compile(r"^-?\d+\.\d+$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$")
_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_]")


@dataclass
class ConversionOptions:
    delimiter: str = ","
    header: bool = True
    fields: List[str] = field(default_factory=list)
    array: bool = False
    pretty: bool = False
    types: bool = False
    null_value: str = ""
    true_value: str = "true"
    false_value: str = "false"
    date_fields: List[str] = field(default_factory=list)
    ignore_errors: bool = False


def clean_header(names: List[str]) -> List[str]:
    cleaned = []
    for index, name in enumerate(names, start=1):
        value = name.strip().strip('"').strip("'").strip()
        value = _NAME_CHARS_RE.sub("", value.replace(" ", "_"))
        cleaned.append(value or f"field_{index}")
    return cleaned


def convert_value(value: str, column: str, options: ConversionOptions) -> Any:
    if not options.types:
        return value
    if column in options.date_fields and _DATE_RE.match(value):
        return value
    if value == options.null_value:
        return None
    if value == options.true_value:
        return True
    if value == options.false_value:
        return False
    if _INT_RE.match(value):
        return int(value)
    if _FLOAT_RE.match(value):
        return float(value)
    return value


def convert(text: str, options: ConversionOptions) -> Any:
    """
    Convert CSV text to a JSON-ready structure.

    Returns:
        List of objects, or with options.array a list of rows whose first
        entry is the header
    """
    if len(options.delimiter) != 1:
        raise ValidationError("The delimiter must be a single character")

    rows = [row for row in csv.reader(io.StringIO(text), delimiter=options.delimiter) if any(cell.strip() for cell in row)]
    if not rows:
        return []

    if options.header:
        header = clean_header(rows[0])
        data_rows = rows[1:]
        first_line = 2
    else:
        data_rows = rows
        first_line = 1
        if options.fields:
            header = clean_header(options.fields)
        else:
            header = [f"field_{i}" for i in range(1, len(rows[0]) + 1)]

    records = []
    for offset, row in enumerate(data_rows):
        if len(row) > len(header):
            message = f"Line {first_line + offset}: {len(row)} fields, expected {len(header)}"
            if not options.ignore_errors:
                raise ValidationError(message)
            logger.warning(f"{message}; extra fields dropped")
            row = row[: len(header)]
        values = [convert_value(cell, header[i], options) for i, cell in enumerate(row)]
        values.extend([None] * (len(header) - len(values)))
        records.append(values)

    if options.array:
        return [header] + records
    return [dict(zip(header, values)) for values in records]


def to_json(data: Any, pretty: bool = False) -> str:
    if pretty:
        return json.dumps(data, indent=2, ensure_ascii=False)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def convert_file(path: str, options: ConversionOptions, encoding: Optional[str] = "utf-8") -> str:
    try:
        with open(path, "r", encoding=encoding, newline="") as handle:
            text = handle.read()
    except FileNotFoundError as e:
        raise ValidationError(f"Input file not found: {path}") from e
    data = convert(text, options)
    logger.debug(f"Converted {len(data)} record(s) from {path}")
    return to_json(data, options.pretty)
