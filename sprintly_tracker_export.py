#!/usr/bin/env python3
"""
Sprintly → Tracker CSV Export
=============================
Single-script export: fetches items from a Sprintly product and writes them
as CSV files that Pivotal Tracker's importer accepts.

What gets exported:
  Sprintly items         → one CSV row each (one file per pagination batch)
  Sprintly comments      → one "Comment" cell each, mentions rewritten
  Sprintly attachments   → one trailing cell listing "name: href" lines

Field mapping:
  Sprintly type          → Tracker story type (story/task/test → feature, defect → bug)
  Sprintly status        → Tracker current state (accepted_at forces "accepted")
  Sprintly score         → Tracker estimate (done work without a score gets 2)
  Sprintly tags          → Tracker labels
  @[Full Name](pk:123)   → Tracker @handle (see DEFAULT_MENTION_DIRECTORY)

Usage:
    python sprintly_tracker_export.py
"""

import sys
import re
import base64
import getpass
import os
import csv
import dataclasses
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Optional

import requests

# ═════════════════════════════════════════════════════════════════════════════
#  CONFIGURATION  —  the only section you need to edit
# ═════════════════════════════════════════════════════════════════════════════

SPRINTLY_API_URL = "https://sprint.ly/api"

# ---------------------------------------------------------------------------
# DEFAULT_MENTION_DIRECTORY
# Maps a Sprintly member's full display name → their Tracker @handle.
# Entries in MENTION_MAPPING_FILE (full_name,handle) are merged on top.
# ---------------------------------------------------------------------------
DEFAULT_MENTION_DIRECTORY: dict = {
    "Joe Developer":  "@joedev",
    "Jane Developer": "@janedev",
}
# ═════════════════════════════════════════════════════════════════════════════

# Sprintly item type  →  Tracker story type
TYPE_MAP: dict = {
    "story":  "feature",
    "defect": "bug",
    "task":   "feature",
    "test":   "feature",
}

# Sprintly status  →  Tracker current state
STATUS_MAP: dict = {
    "someday":     "unscheduled",
    "backlog":     "unstarted",
    "in-progress": "started",
    "completed":   "delivered",
    "accepted":    "accepted",
}

# Sprintly score  →  Tracker estimate ("~" is Sprintly's "not scored")
ESTIMATE_MAP: dict = {
    "~":  -1,
    "S":  2,
    "M":  3,
    "L":  5,
    "XL": 8,
}
UNKNOWN_ESTIMATE      = -1
DEFAULT_DONE_ESTIMATE = 2
DONE_STATUSES         = ("delivered", "accepted")

# Item list filters
ITEM_STATUSES    = ("someday", "backlog", "in-progress", "completed", "accepted")
ITEM_TAGS        = "pivotal"
INCLUDE_CHILDREN = True
ITEM_ORDER       = "oldest"

# One CSV file is written per offset
ITEM_OFFSETS = (0, 100, 200, 300)
PAGE_SIZE    = 100

CSV_HEADERS = (
    "Created at", "Accepted at", "Requested By", "Owned By", "Type",
    "Estimate", "Current State", "Title", "Description", "Labels",
    "Comment", "Comment", "Comment", "Comment", "Comment", "Comment",
)
FIXED_COLUMNS = 10

MENTION_MAPPING_FILE = "mention_directory.csv"


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ExportError(Exception):
    """Raised when an item cannot be turned into a Tracker row."""


class UnknownEnumValue(ExportError):
    def __init__(self, field: str, value) -> None:
        super().__init__(f"unknown {field} value: {value!r}")
        self.field = field
        self.value = value


class UnresolvedMention(ExportError):
    def __init__(self, name: str) -> None:
        super().__init__(f"no Tracker handle for mention of {name!r}")
        self.name = name


class MalformedPayload(ExportError):
    pass


class SprintlyAPIError(Exception):
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Export configuration
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExportConfig:
    """Read-only vocabulary tables handed to every mapping function."""

    type_map:          Mapping
    status_map:        Mapping
    estimate_map:      Mapping
    mention_directory: Mapping
    strict_mentions:   bool = False

    @classmethod
    def default(cls, strict_mentions: bool = False) -> "ExportConfig":
        return cls(
            type_map=MappingProxyType(dict(TYPE_MAP)),
            status_map=MappingProxyType(dict(STATUS_MAP)),
            estimate_map=MappingProxyType(dict(ESTIMATE_MAP)),
            mention_directory=MappingProxyType(dict(DEFAULT_MENTION_DIRECTORY)),
            strict_mentions=strict_mentions,
        )

    def with_mention_directory(self, directory: dict) -> "ExportConfig":
        return dataclasses.replace(
            self, mention_directory=MappingProxyType(dict(directory)))


# ─────────────────────────────────────────────────────────────────────────────
# Utilities
# ─────────────────────────────────────────────────────────────────────────────

def prompt(message: str, default: str = None) -> str:
    suffix = f" [{default}]" if default else ""
    value = input(f"{message}{suffix}: ").strip()
    return value if value else (default or "")


def prompt_secret(message: str, default: str = None) -> str:
    suffix = " [from environment]" if default else ""
    value = getpass.getpass(f"{message}{suffix}: ").strip()
    return value if value else (default or "")


def nested_value(node: Optional[dict], key: str):
    if not node:
        return None
    return node.get(key)


def _parse_iso(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ExportError(f"unparsable timestamp: {value!r}")


# ─────────────────────────────────────────────────────────────────────────────
# Sprintly REST client
# ─────────────────────────────────────────────────────────────────────────────

class SprintlyClient:
    def __init__(self, email: str, api_key: str, product_id: str) -> None:
        self.base       = SPRINTLY_API_URL.rstrip("/")
        self.product_id = str(product_id)
        raw = f"{email}:{api_key}".encode()
        self._auth = "Basic " + base64.b64encode(raw).decode()

    def _request(self, path: str, *, params=None, expected=(200,)):
        url = f"{self.base}/{path.lstrip('/')}"
        headers = {"Authorization": self._auth, "Accept": "application/json"}
        try:
            resp = requests.get(url, headers=headers, params=params, timeout=60)
        except requests.exceptions.ConnectionError:
            raise SprintlyAPIError(f"Connection error: {url}")
        except requests.exceptions.Timeout:
            raise SprintlyAPIError(f"Timeout: {url}")
        if resp.status_code == 401:
            raise SprintlyAPIError("Sprintly authentication failed (401).")
        if resp.status_code == 403:
            raise SprintlyAPIError(f"Sprintly permission denied (403): {path}")
        if resp.status_code not in expected:
            raise SprintlyAPIError(f"Sprintly {resp.status_code} {path}: {resp.text[:300]}")
        try:
            return resp.json()
        except ValueError:
            raise SprintlyAPIError(f"Sprintly {resp.status_code} {path}: response is not JSON")

    def _product_path(self, suffix: str) -> str:
        return f"/products/{self.product_id}{suffix}"

    def get_product(self) -> dict:
        return self._request(self._product_path(".json"))

    def get_items(self, offset: int, limit: int = PAGE_SIZE) -> list:
        params = {
            "status":   ",".join(ITEM_STATUSES),
            "tags":     ITEM_TAGS,
            "children": "true" if INCLUDE_CHILDREN else "false",
            "offset":   offset,
            "limit":    limit,
            "order_by": ITEM_ORDER,
        }
        return self._request(self._product_path("/items.json"), params=params)

    def get_comments(self, item_number):
        """Return the comment list, or the not-found object for a deleted item."""
        return self._request(self._product_path(f"/items/{item_number}/comments.json"),
                             expected=(200, 404))

    def get_attachments(self, item_number):
        """Return the attachment list, or e.g. {"message": "Item does not exist.", "code": 404}."""
        return self._request(self._product_path(f"/items/{item_number}/attachments.json"),
                             expected=(200, 404))


# ─────────────────────────────────────────────────────────────────────────────
# Field mapping
# ─────────────────────────────────────────────────────────────────────────────

def map_type(item_type: Optional[str], config: ExportConfig) -> str:
    if item_type not in config.type_map:
        raise UnknownEnumValue("type", item_type)
    return config.type_map[item_type]


def map_status(status: Optional[str], config: ExportConfig) -> str:
    if status not in config.status_map:
        raise UnknownEnumValue("status", status)
    return config.status_map[status]


def map_estimate(score: Optional[str], config: ExportConfig) -> int:
    # Items that were never scored come back without a score at all
    if score is None:
        return UNKNOWN_ESTIMATE
    if score not in config.estimate_map:
        raise UnknownEnumValue("score", score)
    return config.estimate_map[score]


def format_full_name(person: Optional[dict]) -> str:
    if not person:
        return ""
    first = person.get("first_name") or ""
    last  = person.get("last_name") or ""
    return f"{first} {last}".strip()


def format_date(person: Optional[dict], key: str) -> str:
    """Render person[key] as e.g. "Jul 21, 2014"; empty when absent."""
    value = nested_value(person, key)
    if not value:
        return ""
    return _parse_iso(value).strftime("%b %d, %Y")


def resolve_status(status: Optional[str], accepted_at: Optional[str],
                   config: ExportConfig) -> str:
    if accepted_at:
        return "accepted"
    return map_status(status, config)


def resolve_estimate(resolved_status: str, score: Optional[str],
                     config: ExportConfig) -> int:
    """
    Tracker rejects delivered/accepted stories without an estimate, so done
    work that was never scored gets DEFAULT_DONE_ESTIMATE. Everywhere else
    the UNKNOWN_ESTIMATE sentinel is left visible.
    """
    estimate = map_estimate(score, config)
    if resolved_status in DONE_STATUSES and estimate == UNKNOWN_ESTIMATE:
        return DEFAULT_DONE_ESTIMATE
    return estimate


def join_tags(tags: Optional[list]) -> Optional[str]:
    if not tags:
        return None
    return ",".join(tags)


# ─────────────────────────────────────────────────────────────────────────────
# Comments and attachments
# ─────────────────────────────────────────────────────────────────────────────

_MENTION_PATTERN = re.compile(r'@\[([^\]]+)\]\(pk:(\d+)\)')


def rewrite_mentions(body: str, config: ExportConfig,
                     unresolved: Optional[list] = None) -> str:
    """
    Replace every @[Full Name](pk:123) marker with the member's Tracker handle.

    Markers whose name is not in the directory are left as-is and the name is
    appended to `unresolved`; with config.strict_mentions they raise
    UnresolvedMention instead.
    """
    def replace_mention(m):
        name = m.group(1)
        handle = config.mention_directory.get(name)
        if handle:
            return handle
        if config.strict_mentions:
            raise UnresolvedMention(name)
        if unresolved is not None:
            unresolved.append(name)
        return m.group(0)

    return _MENTION_PATTERN.sub(replace_mention, body)


def render_comment(comment: dict, config: ExportConfig,
                   unresolved: Optional[list] = None) -> Optional[str]:
    body = comment.get("body")
    if body is None:
        return None
    author = comment.get("created_by")
    text = rewrite_mentions(body, config, unresolved)
    return f"{text} ({format_full_name(author)} - {format_date(author, 'created_at')})"


def is_not_found(payload) -> bool:
    return isinstance(payload, dict) and payload.get("code") == 404


def _payload_list(payload, what: str) -> list:
    if isinstance(payload, list):
        return payload
    raise MalformedPayload(f"unexpected {what} payload: {str(payload)[:120]}")


def format_attachments(payload) -> Optional[str]:
    """None for a deleted item (no cell), "" for no attachments."""
    if is_not_found(payload):
        return None
    attachments = _payload_list(payload, "attachments")
    return "".join(f"{att.get('name')}: {att.get('href')}\n" for att in attachments)


# ─────────────────────────────────────────────────────────────────────────────
# Row composition
# ─────────────────────────────────────────────────────────────────────────────

def compose_row(item: dict, comments, attachments, config: ExportConfig,
                unresolved: Optional[list] = None) -> list:
    created_by  = item.get("created_by")
    accepted_at = nested_value(item.get("progress"), "accepted_at")
    status      = resolve_status(item.get("status"), accepted_at, config)

    row = [
        nested_value(created_by, "created_at"),
        accepted_at,
        format_full_name(created_by),
        format_full_name(item.get("assigned_to")),
        map_type(item.get("type"), config),
        resolve_estimate(status, item.get("score"), config),
        status,
        item.get("title"),
        item.get("description"),
        join_tags(item.get("tags")),
    ]

    # Items without comments get no attachment cell either
    if is_not_found(comments) or not _payload_list(comments, "comments"):
        return row

    for comment in comments:
        cell = render_comment(comment, config, unresolved)
        if cell is not None:
            row.append(cell)

    attachments_cell = format_attachments(attachments)
    if attachments_cell is not None:
        row.append(attachments_cell)

    return row


# ─────────────────────────────────────────────────────────────────────────────
# CSV output
# ─────────────────────────────────────────────────────────────────────────────

def build_header(rows: list) -> list:
    """CSV_HEADERS, widened with extra "Comment" columns for the widest row."""
    widest = max((len(r) for r in rows), default=0)
    extra  = max(0, widest - len(CSV_HEADERS))
    return list(CSV_HEADERS) + ["Comment"] * extra


def write_batch_csv(path: str, rows: list) -> None:
    header = build_header(rows)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8", newline="") as fh:
        w = csv.writer(fh)
        w.writerow(header)
        for row in rows:
            w.writerow(list(row) + [""] * (len(header) - len(row)))
    os.replace(tmp, path)


def batch_filename(prefix: str, offset: int) -> str:
    return f"{prefix}-{offset}.csv"


# ─────────────────────────────────────────────────────────────────────────────
# Mention directory  (CSV-backed)
# ─────────────────────────────────────────────────────────────────────────────

def load_mention_csv(path: str = MENTION_MAPPING_FILE) -> dict:
    """Read full_name,handle rows → {full_name: handle}. Missing file → {}."""
    result: dict = {}
    if not os.path.exists(path):
        return result
    with open(path, encoding="utf-8", newline="") as fh:
        for row in csv.reader(fh):
            if not row or row[0].strip().lower() == "full_name":
                continue   # skip header
            name   = row[0].strip()
            handle = row[1].strip() if len(row) > 1 else ""
            if name and handle:
                result[name] = handle
    return result


# ─────────────────────────────────────────────────────────────────────────────
# Export phases
# ─────────────────────────────────────────────────────────────────────────────

def new_report() -> dict:
    return {
        "failed_items":        [],
        "failed_batches":      [],
        "unresolved_mentions": [],
        "missing_items":       [],
        "files_written":       [],
        "rows_written":        0,
    }


def export_batch(client: SprintlyClient, offset: int, config: ExportConfig,
                 report: dict) -> list:
    """Fetch one page of items with their comments and attachments → rows."""
    items = _payload_list(client.get_items(offset), "items")
    print(f"\n  ── Batch offset {offset}: {len(items)} item(s) ──")

    rows: list = []
    for item in items:
        number = item.get("number", "?")
        title  = (item.get("title") or "")[:45]

        comments    = client.get_comments(number)
        attachments = client.get_attachments(number)

        unresolved: list = []
        try:
            row = compose_row(item, comments, attachments, config, unresolved)
        except ExportError as exc:
            print(f"  FAIL  #{number}  ({exc})")
            report["failed_items"].append(
                {"number": number, "offset": offset, "reason": str(exc)})
            continue

        for name in unresolved:
            print(f"  WARN  #{number}  no handle for mention of {name!r} — left as-is")
            report["unresolved_mentions"].append({"number": number, "name": name})
        if is_not_found(attachments) or is_not_found(comments):
            print(f"  WARN  #{number}  item no longer exists upstream")
            report["missing_items"].append(number)

        rows.append(row)
        print(f"  OK    #{number}  [{row[4]}/{row[6]}]  "
              f"{len(row) - FIXED_COLUMNS} extra cell(s)  |  {title}")
    return rows


def export_all(client: SprintlyClient, out_prefix: str, config: ExportConfig,
               report: dict, offsets=ITEM_OFFSETS) -> list:
    """Export every offset batch to its own CSV file. Returns written paths."""
    written: list = []
    for offset in offsets:
        try:
            rows = export_batch(client, offset, config, report)
        except (SprintlyAPIError, ExportError) as exc:
            print(f"  FAIL  batch offset {offset}  ({exc})")
            report["failed_batches"].append({"offset": offset, "reason": str(exc)})
            continue
        path = batch_filename(out_prefix, offset)
        write_batch_csv(path, rows)
        written.append(path)
        report["files_written"].append(path)
        report["rows_written"] += len(rows)
        print(f"  ✓ {len(rows)} row(s) → {path}")
    return written


def print_report(report: dict) -> None:
    print(f"\n  Files written: {len(report['files_written'])}")
    for path in report["files_written"]:
        print(f"       {path}")
    print(f"  Rows written:  {report['rows_written']}")

    _REPORT_SECTIONS = [
        ("failed_batches",      "Failed batches",
         lambda e: f"       offset {e['offset']}:  {e['reason'][:80]}"),
        ("failed_items",        "Failed items",
         lambda e: f"       #{e['number']} (offset {e['offset']}):  {e['reason'][:80]}"),
        ("unresolved_mentions", "Unresolved mentions — add them to " + MENTION_MAPPING_FILE,
         lambda e: f"       #{e['number']}:  {e['name']}"),
        ("missing_items",       "Items missing upstream",
         lambda e: f"       #{e}"),
    ]
    for key, title, fmt in _REPORT_SECTIONS:
        entries = report.get(key) or []
        if entries:
            print(f"\n  ✗  {title} ({len(entries)}):")
            for entry in entries:
                print(fmt(entry))

    if not any([report["failed_batches"], report["failed_items"],
                report["unresolved_mentions"]]):
        print("\n  ✓ All clean — no failures or unresolved mentions.")


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def main() -> None:
    W = 80
    print()
    print("╔" + "═" * (W - 2) + "╗")
    print("║" + "  SPRINTLY → TRACKER CSV EXPORT".center(W - 2) + "║")
    print("╚" + "═" * (W - 2) + "╝")
    print()

    # ── Step 1: Sprintly credentials ──────────────────────────────────────────
    print("Step 1 — Sprintly credentials")
    email = prompt("Sprintly account email", default=os.environ.get("SPRINTLY_EMAIL"))
    if not email:
        print("Error: Sprintly email is required.")
        sys.exit(1)
    api_key = prompt_secret("Sprintly API key", default=os.environ.get("SPRINTLY_API_KEY"))
    if not api_key:
        print("Error: Sprintly API key is required.")
        sys.exit(1)
    product_id = prompt("Sprintly product id", default=os.environ.get("SPRINTLY_PRODUCT_ID"))
    if not product_id:
        print("Error: Sprintly product id is required.")
        sys.exit(1)

    client = SprintlyClient(email, api_key, product_id)
    print("\n  Verifying Sprintly credentials…")
    try:
        product = client.get_product()
    except SprintlyAPIError as exc:
        print(f"  Error: {exc}")
        sys.exit(1)
    print(f"  ✓ Product {product_id}: {product.get('name', '?')}")

    # ── Step 2: Output ────────────────────────────────────────────────────────
    print("\nStep 2 — Output")
    out_prefix = prompt("Output filename prefix", default="tracker-import")
    print(f"  → {', '.join(batch_filename(out_prefix, o) for o in ITEM_OFFSETS)}")

    # ── Step 3: Mention directory ─────────────────────────────────────────────
    print("\nStep 3 — Mention directory")
    directory = dict(DEFAULT_MENTION_DIRECTORY)
    from_file = load_mention_csv(MENTION_MAPPING_FILE)
    directory.update(from_file)
    print(f"  ✓ {len(directory)} handle(s)  ({len(from_file)} from {MENTION_MAPPING_FILE})")
    strict = prompt("  Fail items with unknown mentions? (y/n)", default="n").lower()
    config = ExportConfig.default(strict_mentions=strict in ("y", "yes"))
    config = config.with_mention_directory(directory)

    # ── Step 4: Export ────────────────────────────────────────────────────────
    print("\nStep 4 — Exporting")
    report = new_report()
    export_all(client, out_prefix, config, report)

    # ── Final report ──────────────────────────────────────────────────────────
    print()
    print("╔" + "═" * (W - 2) + "╗")
    print("║" + "  Export complete".center(W - 2) + "║")
    print("╚" + "═" * (W - 2) + "╝")
    print_report(report)
    print()


def run() -> None:
    try:
        main()
    except KeyboardInterrupt:
        print("\n\nAborted.")
        sys.exit(0)


if __name__ == "__main__":
    run()
