from __future__ import annotations

import csv
import html
import io
import json
import plistlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from bs4 import BeautifulSoup, Tag
from dateutil import parser as dt_parser

from stash.errors import DuplicateError, ImportParseError, ValidationError
from stash.models import Bookmark, BookmarkRecord, ensure_utc, utcnow
from stash.services.records import RecordStore

EXPORT_VERSION = "1.0"

FORMAT_JSON = "json"
FORMAT_CSV = "csv"
FORMAT_HTML = "html"
FORMAT_PLIST = "plist"

EXPORT_FORMATS = (FORMAT_JSON, FORMAT_CSV, FORMAT_HTML)

MIMETYPES = {
    FORMAT_JSON: "application/json",
    FORMAT_CSV: "text/csv",
    FORMAT_HTML: "text/html",
}

_EXTENSIONS = {
    ".json": FORMAT_JSON,
    ".csv": FORMAT_CSV,
    ".html": FORMAT_HTML,
    ".htm": FORMAT_HTML,
    ".plist": FORMAT_PLIST,
}

CSV_COLUMNS = ("url", "title", "notes", "createdAt", "modifiedAt")

_WEBKIT_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)

# exported notes are written verbatim and can exceed the 128 KiB default
CSV_FIELD_LIMIT = 16 * 1024 * 1024
csv.field_size_limit(max(csv.field_size_limit(), CSV_FIELD_LIMIT))


@dataclass
class ExportResult:
    content: str
    filename: str
    mimetype: str
    format: str
    count: int


@dataclass
class ImportEntry:
    url: str
    title: str | None = None
    notes: str | None = None
    created_at: datetime | None = None


@dataclass
class ParsedImport:
    source: str
    entries: list[ImportEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class ImportSummary:
    source: str
    total_items: int = 0
    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "source": self.source,
            "totalItems": self.total_items,
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


# -- export -----------------------------------------------------------------


def _as_record(item) -> BookmarkRecord:
    if isinstance(item, Bookmark):
        return item.to_record()
    return item


def _export_row(record: BookmarkRecord) -> dict:
    return {
        "id": record.id,
        "url": record.url,
        "title": record.title,
        "notes": record.notes,
        "createdAt": record.created_at.isoformat(),
        "modifiedAt": record.modified_at.isoformat(),
    }


def _export_json(records: list[BookmarkRecord], platform: str, now: datetime) -> str:
    envelope = {
        "version": EXPORT_VERSION,
        "exportDate": now.isoformat(),
        "platform": platform,
        "records": [_export_row(record) for record in records],
    }
    return json.dumps(envelope, indent=2, ensure_ascii=False) + "\n"


def _export_csv(records: list[BookmarkRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(CSV_COLUMNS)
    for record in records:
        writer.writerow(
            [
                record.url,
                record.title or "",
                record.notes or "",
                record.created_at.isoformat(),
                record.modified_at.isoformat(),
            ]
        )
    return buffer.getvalue()


def _export_html(records: list[BookmarkRecord], now: datetime) -> str:
    lines = [
        "<!DOCTYPE NETSCAPE-Bookmark-file-1>",
        '<META HTTP-EQUIV="Content-Type" CONTENT="text/html; charset=UTF-8">',
        "<TITLE>Stash Bookmarks</TITLE>",
        "<H1>Stash Bookmarks</H1>",
        f"<!-- exported {now.isoformat()} -->",
        "<DL><p>",
    ]
    for record in records:
        title = record.title or record.url
        lines.append(
            '    <DT><A HREF="{href}" ADD_DATE="{added}" LAST_MODIFIED="{modified}">'
            "{title}</A>".format(
                href=html.escape(record.url, quote=True),
                added=int(record.created_at.timestamp()),
                modified=int(record.modified_at.timestamp()),
                title=html.escape(title, quote=False),
            )
        )
        if record.notes:
            lines.append(f"    <DD>{html.escape(record.notes, quote=False)}")
    lines.append("</DL><p>")
    return "\n".join(lines) + "\n"


def export_records(
    records, fmt: str = FORMAT_JSON, platform: str = "web", now: datetime | None = None
) -> ExportResult:
    fmt = (fmt or FORMAT_JSON).strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"unsupported export format: {fmt}")
    now = ensure_utc(now) or utcnow()
    rows = [_as_record(item) for item in records]

    if fmt == FORMAT_JSON:
        content = _export_json(rows, platform, now)
    elif fmt == FORMAT_CSV:
        content = _export_csv(rows)
    else:
        content = _export_html(rows, now)

    return ExportResult(
        content=content,
        filename=f"stash-bookmarks-{now:%Y%m%d-%H%M%S}.{fmt}",
        mimetype=MIMETYPES[fmt],
        format=fmt,
        count=len(rows),
    )


# -- import -----------------------------------------------------------------


def _to_text(content: bytes | str) -> str:
    if isinstance(content, bytes):
        return content.decode("utf-8-sig", errors="replace")
    return content.lstrip("﻿")


def detect_format(filename: str | None, content: bytes | str) -> str:
    name = (filename or "").lower()
    for extension, fmt in _EXTENSIONS.items():
        if name.endswith(extension):
            return fmt

    if isinstance(content, bytes) and content.startswith(b"bplist"):
        return FORMAT_PLIST
    head = _to_text(content[:512] if content else content).lstrip()
    if head.startswith(("{", "[")):
        return FORMAT_JSON
    if head.startswith("<?xml") and "plist" in head.lower():
        return FORMAT_PLIST
    if head.startswith("<"):
        return FORMAT_HTML
    return FORMAT_CSV


def _parse_date(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return ensure_utc(dt_parser.isoparse(str(value)))


def _entry_from_mapping(item, position: int) -> ImportEntry:
    if not isinstance(item, dict):
        raise ImportParseError(f"entry {position}: expected an object")
    url = item.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ImportParseError(f"entry {position}: missing url")
    try:
        created_at = _parse_date(item.get("createdAt", item.get("created_at")))
    except (ValueError, OverflowError) as exc:
        raise ImportParseError(f"entry {position}: bad createdAt ({exc})") from exc
    return ImportEntry(
        url=url.strip(),
        title=item.get("title") or None,
        notes=item.get("notes") or None,
        created_at=created_at,
    )


def _chrome_entry(node) -> ImportEntry:
    created_at = None
    raw_added = node.get("date_added")
    if raw_added and str(raw_added).isdigit():
        try:
            created_at = _WEBKIT_EPOCH + timedelta(microseconds=int(raw_added))
        except (ValueError, OverflowError) as exc:
            raise ImportParseError(f"{node['url']}: bad date_added ({exc})") from exc
    return ImportEntry(url=node["url"], title=node.get("name") or None, created_at=created_at)


def _walk_chrome(node, parsed: ParsedImport) -> None:
    if not isinstance(node, dict):
        return
    if node.get("type") == "url" and node.get("url"):
        try:
            parsed.entries.append(_chrome_entry(node))
        except ImportParseError as exc:
            parsed.errors.append(str(exc))
    for child in node.get("children") or []:
        _walk_chrome(child, parsed)


def parse_json(text: str) -> ParsedImport:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ImportParseError(f"invalid JSON: {exc.msg}", line=exc.lineno) from exc

    if isinstance(data, dict) and isinstance(data.get("roots"), dict):
        parsed = ParsedImport(source="Chrome Bookmarks")
        for root in data["roots"].values():
            _walk_chrome(root, parsed)
        return parsed

    if isinstance(data, dict):
        items = data.get("records", data.get("bookmarks"))
        if not isinstance(items, list):
            raise ImportParseError("JSON object has no records list")
        source = f"JSON Export v{data.get('version', EXPORT_VERSION)}"
    elif isinstance(data, list):
        items = data
        source = "JSON Export (Legacy)"
    else:
        raise ImportParseError("unsupported JSON document")

    parsed = ParsedImport(source=source)
    for position, item in enumerate(items, start=1):
        try:
            parsed.entries.append(_entry_from_mapping(item, position))
        except ImportParseError as exc:
            parsed.errors.append(str(exc))
    return parsed


def parse_csv(text: str) -> ParsedImport:
    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except StopIteration as exc:
        raise ImportParseError("empty CSV file") from exc
    except csv.Error as exc:
        raise ImportParseError(f"unreadable CSV header ({exc})", line=1) from exc

    columns = {name.strip().lower(): index for index, name in enumerate(header)}
    url_index = columns.get("url")
    if url_index is None:
        raise ImportParseError("CSV header has no url column", line=1)

    def column(row: list[str], *names: str) -> str | None:
        for name in names:
            index = columns.get(name)
            if index is not None and index < len(row):
                return row[index].strip() or None
        return None

    parsed = ParsedImport(source="CSV Import")
    while True:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            # the reader has already consumed the bad line and resumes on the next one
            parsed.errors.append(
                str(ImportParseError(f"unreadable row ({exc})", line=reader.line_num))
            )
            continue
        if not any(cell.strip() for cell in row):
            continue
        line = reader.line_num
        url = row[url_index].strip() if url_index < len(row) else ""
        if not url:
            parsed.errors.append(str(ImportParseError("missing url", line=line)))
            continue
        try:
            created_at = _parse_date(column(row, "createdat", "created_at", "created"))
        except (ValueError, OverflowError):
            parsed.errors.append(str(ImportParseError("bad createdAt value", line=line)))
            continue
        parsed.entries.append(
            ImportEntry(
                url=url,
                title=column(row, "title"),
                notes=column(row, "notes"),
                created_at=created_at,
            )
        )
    return parsed


def _anchor_notes(anchor: Tag) -> str | None:
    following = anchor.find_next(["dd", "dt", "a"])
    if isinstance(following, Tag) and following.name == "dd":
        # lxml nests the next <DT> inside an unclosed <DD>; keep only its own text
        own_text = "".join(
            piece for piece in following.find_all(string=True, recursive=False)
        )
        return own_text.strip() or None
    return None


def parse_html(text: str) -> ParsedImport:
    soup = BeautifulSoup(text, "lxml")
    parsed = ParsedImport(source="HTML Import")
    for anchor in soup.find_all("a"):
        if not isinstance(anchor, Tag):
            continue
        href_value = anchor.get("href")
        href = href_value.strip() if isinstance(href_value, str) else ""
        if not href or href.startswith("#"):
            continue
        created_at = None
        add_date = anchor.get("add_date")
        if isinstance(add_date, str) and add_date.isdigit():
            try:
                created_at = datetime.fromtimestamp(int(add_date), tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                parsed.errors.append(str(ImportParseError(f"{href}: bad ADD_DATE {add_date}")))
                continue
        parsed.entries.append(
            ImportEntry(
                url=href,
                title=anchor.get_text(strip=True) or None,
                notes=_anchor_notes(anchor),
                created_at=created_at,
            )
        )
    return parsed


def _walk_safari(node, out: list[ImportEntry]) -> None:
    if not isinstance(node, dict):
        return
    if node.get("WebBookmarkType") == "WebBookmarkTypeLeaf" and node.get("URLString"):
        title = (node.get("URIDictionary") or {}).get("title")
        out.append(ImportEntry(url=node["URLString"], title=title or None))
    for child in node.get("Children") or []:
        _walk_safari(child, out)


def parse_plist(content: bytes | str) -> ParsedImport:
    raw = content.encode("utf-8") if isinstance(content, str) else content
    try:
        data = plistlib.loads(raw)
    except (plistlib.InvalidFileException, ValueError) as exc:
        raise ImportParseError(f"invalid plist: {exc}") from exc
    parsed = ParsedImport(source="Safari Bookmarks")
    _walk_safari(data, parsed.entries)
    return parsed


def parse_import(content: bytes | str, fmt: str) -> ParsedImport:
    if fmt == FORMAT_PLIST:
        return parse_plist(content)
    text = _to_text(content)
    if fmt == FORMAT_JSON:
        return parse_json(text)
    if fmt == FORMAT_CSV:
        return parse_csv(text)
    if fmt == FORMAT_HTML:
        return parse_html(text)
    raise ValidationError(f"unsupported import format: {fmt}")


def import_records(
    store: RecordStore,
    content: bytes | str,
    filename: str | None = None,
    fmt: str | None = None,
) -> ImportSummary:
    """Merge an import file into the store.

    Active URLs are skipped, never overwritten. Malformed entries and invalid
    URLs land in ``errors`` while the rest of the file is still imported.
    Imported bookmarks get fresh ids and keep their original ``createdAt``.
    """
    parsed = parse_import(content, (fmt or detect_format(filename, content)).lower())
    summary = ImportSummary(
        source=parsed.source,
        total_items=len(parsed.entries) + len(parsed.errors),
        errors=list(parsed.errors),
    )
    for entry in parsed.entries:
        try:
            store.create(
                entry.url,
                title=entry.title,
                notes=entry.notes,
                created_at=entry.created_at,
            )
        except DuplicateError:
            summary.skipped += 1
        except ValidationError:
            summary.errors.append(f"Invalid URL: {entry.url}")
        else:
            summary.imported += 1
    return summary
