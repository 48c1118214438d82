"""
Report Writer - one serializer for every tool's tabular output.

render() turns a list of records (pydantic models or dicts) into text,
csv, json, xml or html. write_output() sends the result to stdout or a
file, optionally appending.
"""

import csv
import html
import io
import json
import logging
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from xml.sax.saxutils import escape as xml_escape

from pydantic import BaseModel

from scripthub.errors import ValidationError

logger = logging.getLogger("scripthub.report")

FORMATS = ("text", "csv", "json", "xml", "html")


def to_dict(record: Any) -> Dict[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json")
    if isinstance(record, dict):
        return dict(record)
    raise TypeError(f"Cannot serialize record of type {type(record).__name__}")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(round(value, 3))
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, (list, tuple)):
        return ";".join(_cell(v) for v in value)
    if isinstance(value, dict):
        return ";".join(f"{k}={_cell(v)}" for k, v in value.items())
    return str(value)


def _resolve_columns(rows: List[Dict[str, Any]], columns: Optional[Sequence[str]]) -> List[str]:
    if columns:
        return list(columns)
    if not rows:
        return []
    return list(rows[0].keys())


def render_text(rows: List[Dict[str, Any]], columns: List[str], headers: Optional[Sequence[str]] = None, title: str = "", show_header: bool = True) -> str:
    """Aligned plain-text table."""
    headers = list(headers or [c.replace("_", " ").title() for c in columns])
    table = [[_cell(row.get(c)) for c in columns] for row in rows]
    widths = [len(h) for h in headers]
    for line in table:
        for i, cell in enumerate(line):
            widths[i] = max(widths[i], len(cell))

    out = []
    if title:
        out.append(title)
        out.append("")
    if show_header:
        out.append("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip())
        out.append("  ".join("-" * w for w in widths))
    for line in table:
        out.append("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(line)).rstrip())
    return "\n".join(out)


def render_csv(rows: List[Dict[str, Any]], columns: List[str], headers: Optional[Sequence[str]] = None, show_header: bool = True) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    if show_header:
        writer.writerow(list(headers or columns))
    for row in rows:
        writer.writerow([_cell(row.get(c)) for c in columns])
    return buffer.getvalue().rstrip("\n")


def render_json(rows: List[Dict[str, Any]], meta: Optional[Dict[str, Any]] = None, key: str = "results") -> str:
    if meta is None:
        return json.dumps(rows, indent=2, default=str)
    payload = dict(meta)
    payload[key] = rows
    return json.dumps(payload, indent=2, default=str)


def render_xml(rows: List[Dict[str, Any]], columns: List[str], root: str = "report", item: str = "item", meta: Optional[Dict[str, Any]] = None) -> str:
    out = ['<?xml version="1.0" encoding="UTF-8"?>', f"<{root}>"]
    if meta:
        out.append("  <info>")
        for name, value in meta.items():
            out.append(f"    <{name}>{xml_escape(_cell(value))}</{name}>")
        out.append("  </info>")
    for row in rows:
        out.append(f"  <{item}>")
        for column in columns:
            out.append(f"    <{column}>{xml_escape(_cell(row.get(column)))}</{column}>")
        out.append(f"  </{item}>")
    out.append(f"</{root}>")
    return "\n".join(out)


def render_html(rows: List[Dict[str, Any]], columns: List[str], headers: Optional[Sequence[str]] = None, title: str = "Report") -> str:
    headers = list(headers or [c.replace("_", " ").title() for c in columns])
    out = [
        "<!DOCTYPE html>",
        "<html>",
        "<head>",
        '<meta charset="utf-8">',
        f"<title>{html.escape(title)}</title>",
        "<style>",
        "body { font-family: sans-serif; margin: 20px; }",
        "table { border-collapse: collapse; width: 100%; }",
        "th, td { border: 1px solid #ddd; padding: 6px; text-align: left; }",
        "th { background-color: #f2f2f2; }",
        "</style>",
        "</head>",
        "<body>",
        f"<h1>{html.escape(title)}</h1>",
        f"<p>Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}</p>",
        "<table>",
        "<tr>" + "".join(f"<th>{html.escape(h)}</th>" for h in headers) + "</tr>",
    ]
    for row in rows:
        out.append("<tr>" + "".join(f"<td>{html.escape(_cell(row.get(c)))}</td>" for c in columns) + "</tr>")
    out.extend(["</table>", "</body>", "</html>"])
    return "\n".join(out)


def render(
    records: Sequence[Any],
    fmt: str = "text",
    columns: Optional[Sequence[str]] = None,
    headers: Optional[Sequence[str]] = None,
    title: str = "",
    meta: Optional[Dict[str, Any]] = None,
    show_header: bool = True,
    xml_root: str = "report",
    xml_item: str = "item",
) -> str:
    """
    Serialize records in one of FORMATS.

    Args:
        records: pydantic models or dicts
        fmt: text, csv, json, xml or html ("table"/"plain" mean text)
        columns: Field names and order; defaults to the first record's keys
        headers: Display names for text/csv/html headers
        title: Heading for text and html
        meta: Extra top-level data for json and xml
        show_header: Include the header row in text and csv
    """
    fmt = (fmt or "text").lower()
    if fmt in ("table", "plain"):
        fmt = "text"
    if fmt not in FORMATS:
        raise ValidationError(f"Unknown output format '{fmt}' (use one of: {', '.join(FORMATS)})")

    rows = [to_dict(record) for record in records]
    cols = _resolve_columns(rows, columns)

    if fmt == "json":
        if columns:
            rows = [{c: row.get(c) for c in cols} for row in rows]
        return render_json(rows, meta)
    if fmt == "csv":
        return render_csv(rows, cols, headers, show_header)
    if fmt == "xml":
        return render_xml(rows, cols, xml_root, xml_item, meta)
    if fmt == "html":
        return render_html(rows, cols, headers, title or "Report")
    return render_text(rows, cols, headers, title, show_header)


def write_output(content: str, path: Optional[str] = None, append: bool = False) -> None:
    """Write content to a file, or to stdout when path is None."""
    if not content.endswith("\n"):
        content += "\n"
    if path is None or path == "-":
        sys.stdout.write(content)
        sys.stdout.flush()
        return

    target = Path(path)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a" if append else "w", encoding="utf-8") as handle:
        handle.write(content)
    logger.info(f"Output written to {target}")
