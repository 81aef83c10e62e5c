# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "openpyxl",
#   "apscheduler>=3.10,<4",
# ]
# ///
"""PageSpeed Insights to spreadsheet logger.

Queries Google PageSpeed Insights for a configured set of URLs on both
device strategies, condenses the interesting Lighthouse audits into three
text blobs and appends one row per (URL, device) to a spreadsheet,
optionally mailing a completion or failure notice.
"""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
import re
import smtplib
import sys
import time
import tomllib
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from email.mime.text import MIMEText
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol
from urllib.parse import urlparse

import pandas as pd
import requests
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font, PatternFill

__version__ = "1.0.0"

logger = logging.getLogger("pagespeed_sheets")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

STRATEGIES = ("mobile", "desktop")
VALID_CHECK_STRATEGIES = ("mobile", "desktop", "both")
CATEGORIES = ["performance", "accessibility", "best-practices", "seo"]
VALID_OUTPUT_FORMATS = ("csv", "json")

REQUEST_TIMEOUT = 120

DEFAULT_DELAY = 1.0
DEFAULT_SHEET_NAME = "PageSpeed Data"
DEFAULT_SCHEDULE_TIMES = ((8, 30), (12, 0), (16, 30))
SCHEDULER_JOB_ID = "pagespeed-extraction"
DEFAULT_SMTP_PORT = 587
DEFAULT_OUTPUT_FORMAT = "csv"

CONFIG_FILENAMES = ["pagespeed-sheets.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "pagespeed-sheets",
]

# Environment variables consulted when a value is not set by flag or config.
ENV_FALLBACKS = {
    "api_key": "PAGESPEED_API_KEY",
    "spreadsheet": "PAGESPEED_SPREAD_SHEET_ID",
    "config_urls": "PAGESPEED_WEBSITE_URL",
    "sheet_name": "PAGESPEED_SHEET_NAME",
    "smtp_host": "SMTP_HOST",
    "smtp_port": "SMTP_PORT",
    "smtp_user": "SMTP_USER",
    "smtp_password": "SMTP_PASSWORD",
    "smtp_from": "SMTP_FROM",
}

URL_PATTERN = re.compile(
    r"^https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
    r"([-a-zA-Z0-9()@:%_+.~#?&/=]*)$"
)

# Curated audit ids per sheet column. Order is the order lines appear in the cell.
OPPORTUNITY_AUDITS = (
    "render-blocking-resources",
    "unused-css-rules",
    "unused-javascript",
    "modern-image-formats",
    "offscreen-images",
    "unminified-css",
    "unminified-javascript",
    "efficient-animated-content",
    "duplicated-javascript",
    "legacy-javascript",
    "uses-optimized-images",
    "uses-text-compression",
    "uses-responsive-images",
)

DIAGNOSTIC_AUDITS = (
    "mainthread-work-breakdown",
    "bootup-time",
    "uses-rel-preconnect",
    "font-display",
    "third-party-summary",
    "third-party-facades",
    "largest-contentful-paint-element",
    "lcp-lazy-loaded",
    "layout-shift-elements",
    "uses-passive-event-listeners",
    "no-document-write",
    "long-tasks",
    "non-composited-animations",
    "unsized-images",
    "viewport",
)

GENERAL_AUDITS = (
    "uses-http2",
    "uses-long-cache-ttl",
    "total-byte-weight",
    "dom-size",
    "critical-request-chains",
    "user-timings",
    "diagnostics",
    "network-requests",
    "network-rtt",
    "network-server-latency",
    "main-thread-tasks",
    "metrics",
    "screenshot-thumbnails",
    "final-screenshot",
)

DEFAULT_AUDIT_KEYS = {
    "opportunity": OPPORTUNITY_AUDITS,
    "diagnostic": DIAGNOSTIC_AUDITS,
    "general": GENERAL_AUDITS,
}

# Sheet layout
BANNER_LABEL = "information"
SHEET_HEADERS = [
    "Timestamp",
    "Website",
    "Device",
    "Performance",
    "Accessibility",
    "Best Practices",
    "SEO",
    "Insights",
    "Diagnostics",
    "General",
]
HEADER_ROWS = 2
NOT_AVAILABLE = "N/A"
IN_PROGRESS = "in progress"
DEVICE_FILLS = {
    "mobile": "E8F0FE",
    "desktop": "E6F4EA",
}
MAX_SHEET_NAME_LENGTH = 31
SHEET_HASH_LENGTH = 8
INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")

EMAIL_SUBJECT = "PageSpeed Insights Report"
SUCCESS_MESSAGE = "PageSpeed data extraction completed successfully."
FAILURE_MESSAGE = "PageSpeed extraction failed: {error}"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PageSpeedError(Exception):
    """Base error for structural failures that abort a run."""


class ConfigError(PageSpeedError):
    """Raised when required configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Config:
    """Process-wide settings, built once at startup and never mutated."""

    urls: tuple[str, ...]
    spreadsheet: str | None
    sheet_name: str = DEFAULT_SHEET_NAME
    sheet_per_url: bool = False
    api_key: str | None = None
    email_notification: bool = False
    notification_emails: tuple[str, ...] = ()
    schedule_times: tuple[tuple[int, int], ...] = DEFAULT_SCHEDULE_TIMES
    delay: float = DEFAULT_DELAY
    timezone: str | None = None
    spreadsheet_url: str | None = None
    smtp_host: str | None = None
    smtp_port: int = DEFAULT_SMTP_PORT
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None
    smtp_starttls: bool = True
    audit_keys: tuple[tuple[str, tuple[str, ...]], ...] = tuple(DEFAULT_AUDIT_KEYS.items())


@dataclass
class ExtractionResult:
    """Scores and condensed audit text for one (URL, strategy) pair."""

    url: str
    strategy: str
    performance_score: int | None
    accessibility_score: int | None
    best_practices_score: int | None
    seo_score: int | None
    insights: str
    diagnostics: str
    general: str
    fetch_time: str | None = None


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings], an optional profile and the environment into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Environment variables
      5. Built-in defaults (already in args, or in Config)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "urls": "config_urls",
        "spreadsheet": "spreadsheet",
        "spreadsheet_url": "spreadsheet_url",
        "sheet_name": "sheet_name",
        "sheet_per_url": "sheet_per_url",
        "delay": "delay",
        "email_notification": "email_notification",
        "notification_emails": "notification_emails",
        "schedule_times": "schedule_times",
        "timezone": "timezone",
        "smtp_host": "smtp_host",
        "smtp_port": "smtp_port",
        "smtp_user": "smtp_user",
        "smtp_password": "smtp_password",
        "smtp_from": "smtp_from",
        "smtp_starttls": "smtp_starttls",
        "opportunity_audits": "opportunity_audits",
        "diagnostic_audits": "diagnostic_audits",
        "general_audits": "general_audits",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue  # CLI flag takes priority
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    for arg_dest, env_name in ENV_FALLBACKS.items():
        if getattr(args, arg_dest, None):
            continue
        env_value = os.environ.get(env_name)
        if env_value:
            setattr(args, arg_dest, env_value)

    return args


def _as_tuple(value) -> tuple[str, ...]:
    """Accept a list or a comma separated string."""
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(item.strip() for item in value if str(item).strip())


def _parse_schedule_times(raw) -> tuple[tuple[int, int], ...]:
    if raw is None:
        return DEFAULT_SCHEDULE_TIMES
    slots = []
    for entry in raw:
        if isinstance(entry, dict):
            hour, minute = entry.get("hour"), entry.get("minute", 0)
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            hour, minute = entry
        else:
            raise ConfigError(f"invalid schedule slot: {entry!r}")
        if not isinstance(hour, int) or not isinstance(minute, int):
            raise ConfigError(f"invalid schedule slot: {entry!r}")
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ConfigError(f"schedule slot out of range: {hour}:{minute:02d}")
        slots.append((hour, minute))
    return tuple(slots)


def build_config(
    args: argparse.Namespace,
    require_urls: bool = True,
    require_spreadsheet: bool = True,
) -> Config:
    """Build the immutable Config from resolved args. Raises ConfigError."""
    urls = _as_tuple(getattr(args, "urls", None)) or _as_tuple(getattr(args, "config_urls", None))
    if require_urls and not urls:
        raise ConfigError("no target URLs configured (set 'urls' or PAGESPEED_WEBSITE_URL)")

    spreadsheet = getattr(args, "spreadsheet", None)
    if require_spreadsheet and not spreadsheet:
        raise ConfigError("no spreadsheet configured (set 'spreadsheet' or PAGESPEED_SPREAD_SHEET_ID)")

    email_notification = bool(getattr(args, "email_notification", False))
    if getattr(args, "no_email", False):
        email_notification = False
    notification_emails = _as_tuple(getattr(args, "notification_emails", None))

    smtp_host = getattr(args, "smtp_host", None)
    smtp_from = getattr(args, "smtp_from", None) or getattr(args, "smtp_user", None)
    if email_notification and notification_emails and not (smtp_host and smtp_from):
        raise ConfigError("email notification is enabled but smtp_host/smtp_from are not set")

    try:
        delay = float(getattr(args, "delay", DEFAULT_DELAY))
        smtp_port = int(getattr(args, "smtp_port", None) or DEFAULT_SMTP_PORT)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid numeric setting: {exc}") from exc
    if delay < 0:
        raise ConfigError("delay must not be negative")

    audit_keys = dict(DEFAULT_AUDIT_KEYS)
    for category in DEFAULT_AUDIT_KEYS:
        override = getattr(args, f"{category}_audits", None)
        if override:
            audit_keys[category] = _as_tuple(override)

    return Config(
        urls=urls,
        spreadsheet=spreadsheet,
        sheet_name=getattr(args, "sheet_name", None) or DEFAULT_SHEET_NAME,
        sheet_per_url=bool(getattr(args, "sheet_per_url", False)),
        api_key=getattr(args, "api_key", None),
        email_notification=email_notification,
        notification_emails=notification_emails,
        schedule_times=_parse_schedule_times(getattr(args, "schedule_times", None)),
        delay=delay,
        timezone=getattr(args, "timezone", None),
        spreadsheet_url=getattr(args, "spreadsheet_url", None),
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_user=getattr(args, "smtp_user", None),
        smtp_password=getattr(args, "smtp_password", None),
        smtp_from=smtp_from,
        smtp_starttls=bool(getattr(args, "smtp_starttls", True)),
        audit_keys=tuple(audit_keys.items()),
    )


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="pagespeed-sheets",
        description="Log PageSpeed Insights results to a spreadsheet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="Google API key (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Debug logging to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Run one extraction and append rows to the sheet")
    run_parser.add_argument("urls", nargs="*", default=[], help="URLs to test (defaults to configured urls)")
    run_parser.add_argument("--spreadsheet", dest="spreadsheet", action=TrackingAction, default=None, help="Workbook path (or set PAGESPEED_SPREAD_SHEET_ID)")
    run_parser.add_argument("--sheet-name", dest="sheet_name", action=TrackingAction, default=None, help=f"Destination sheet (default: {DEFAULT_SHEET_NAME})")
    run_parser.add_argument("--sheet-per-url", dest="sheet_per_url", action=TrackingStoreTrueAction, default=False, help="Write each URL to its own sheet")
    run_parser.add_argument("-d", "--delay", dest="delay", action=TrackingAction, type=float, default=DEFAULT_DELAY, help="Seconds to pause after each URL")
    run_parser.add_argument("--no-email", dest="no_email", action="store_true", default=False, help="Skip the completion/failure email")

    # --- check ---
    check_parser = subparsers.add_parser("check", help="Fetch and print one URL without writing to the sheet")
    check_parser.add_argument("url", help="URL to check")
    check_parser.add_argument("-s", "--strategy", dest="strategy", default="both", choices=VALID_CHECK_STRATEGIES, help="Strategy: mobile, desktop, or both")

    # --- schedule ---
    schedule_parser = subparsers.add_parser("schedule", help="Run extractions daily at the configured times")
    schedule_parser.add_argument("--spreadsheet", dest="spreadsheet", action=TrackingAction, default=None, help="Workbook path (or set PAGESPEED_SPREAD_SHEET_ID)")
    schedule_parser.add_argument("--sheet-name", dest="sheet_name", action=TrackingAction, default=None, help=f"Destination sheet (default: {DEFAULT_SHEET_NAME})")

    # --- export ---
    export_parser = subparsers.add_parser("export", help="Export sheet rows to CSV or JSON")
    export_parser.add_argument("--spreadsheet", dest="spreadsheet", action=TrackingAction, default=None, help="Workbook path (or set PAGESPEED_SPREAD_SHEET_ID)")
    export_parser.add_argument("--sheet-name", dest="sheet_name", action=TrackingAction, default=None, help=f"Sheet to export (default: {DEFAULT_SHEET_NAME})")
    export_parser.add_argument("--output-format", dest="output_format", default=DEFAULT_OUTPUT_FORMAT, choices=VALID_OUTPUT_FORMATS, help="Output format: csv or json")
    export_parser.add_argument("-o", "--output", dest="output", default=None, help="Output file path (default: stdout)")

    return parser


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    # Add scheme if missing
    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    if not URL_PATTERN.match(url):
        return None
    return url


def sheet_name_for_url(url: str) -> str:
    """Derive a per-URL sheet name from host and path.

    Names over the workbook length limit are cut short and tagged with a
    hash of the URL, so two long URLs sharing a prefix keep separate sheets.
    """
    cleaned = validate_url(url) or url.strip()
    parsed = urlparse(cleaned)
    host = parsed.netloc or cleaned
    if host.startswith("www."):
        host = host[4:]
    name = host + parsed.path.rstrip("/")
    if len(name) > MAX_SHEET_NAME_LENGTH:
        return _hashed_sheet_name(name, cleaned)
    return sanitize_sheet_name(name)


def _hashed_sheet_name(name: str, url: str) -> str:
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:SHEET_HASH_LENGTH]
    prefix = sanitize_sheet_name(name)[: MAX_SHEET_NAME_LENGTH - SHEET_HASH_LENGTH - 1]
    return f"{prefix}-{digest}"


def assign_sheet_names(urls) -> dict[str, str]:
    """Map every valid URL to a sheet name no other URL in the run uses.

    Workbook titles compare case-insensitively, so a URL whose name only
    differs in case from an earlier one gets the hashed form instead.
    Invalid URLs are left out.
    """
    names: dict[str, str] = {}
    taken: set[str] = set()
    for url in urls:
        cleaned = validate_url(url)
        if cleaned is None or cleaned in names:
            continue
        name = sheet_name_for_url(cleaned)
        if name.casefold() in taken:
            name = _hashed_sheet_name(name, cleaned)
        names[cleaned] = name
        taken.add(name.casefold())
    return names


def sanitize_sheet_name(name: str) -> str:
    """Apply workbook sheet naming limits."""
    cleaned = INVALID_SHEET_CHARS.sub("-", name).strip("'")
    return cleaned[:MAX_SHEET_NAME_LENGTH] or DEFAULT_SHEET_NAME


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def fetch_pagespeed_result(
    url: str,
    strategy: str,
    api_key: str | None = None,
    categories: list[str] | None = None,
    session: requests.Session | None = None,
) -> dict | None:
    """Fetch PageSpeed Insights results for a single URL + strategy.

    Makes exactly one request. Any failure is logged and yields None so
    the caller can move on to the next pair.
    """
    params: dict[str, str | list[str]] = {
        "url": url,
        "strategy": strategy,
        "category": categories or CATEGORIES,
    }
    if api_key:
        params["key"] = api_key

    http = session or requests
    logger.info("Testing %s (%s)...", url, strategy)
    try:
        response = http.get(PAGESPEED_API_URL, params=params, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as exc:
        logger.error("Request failed for %s (%s): %s", url, strategy, exc)
        return None

    if response.status_code != 200:
        try:
            error_detail = response.json().get("error", {}).get("message", response.text[:200])
        except (ValueError, AttributeError):
            error_detail = response.text[:200]
        logger.error("API error HTTP %s for %s (%s): %s", response.status_code, url, strategy, error_detail)
        return None

    try:
        data = response.json()
    except ValueError as exc:
        logger.error("Malformed JSON for %s (%s): %s", url, strategy, exc)
        return None

    if not isinstance(data, dict) or not isinstance(data.get("lighthouseResult"), dict):
        logger.error("No lighthouseResult in response for %s (%s)", url, strategy)
        return None
    return data


# ---------------------------------------------------------------------------
# Audit Extraction
# ---------------------------------------------------------------------------


def format_audits(audits: dict, audit_keys) -> str:
    """Render the audits named in audit_keys as "title displayValue" lines.

    Keys keep their list order; audits that are missing or have no
    displayValue contribute nothing.
    """
    lines = []
    for audit_key in audit_keys:
        audit = audits.get(audit_key)
        if not audit:
            continue
        display_value = audit.get("displayValue")
        if display_value:
            lines.append(f"{audit.get('title', audit_key)} {display_value}")
    return "\n".join(lines)


def extract_insights(audits: dict, audit_keys=OPPORTUNITY_AUDITS) -> str:
    return format_audits(audits, audit_keys)


def extract_diagnostics(audits: dict, audit_keys=DIAGNOSTIC_AUDITS) -> str:
    return format_audits(audits, audit_keys)


def extract_general(audits: dict, audit_keys=GENERAL_AUDITS) -> str:
    return format_audits(audits, audit_keys)


def _category_score(categories: dict, key: str) -> int | None:
    score = categories.get(key, {}).get("score")
    return round(score * 100) if score is not None else None


def extract_result(
    api_response: dict,
    url: str,
    strategy: str,
    audit_keys=None,
) -> ExtractionResult:
    """Build an ExtractionResult from a PageSpeed API response.

    audit_keys maps category to audit ids, as a dict or as (category, ids) pairs.
    """
    keys = dict(audit_keys or DEFAULT_AUDIT_KEYS)
    lighthouse = api_response.get("lighthouseResult", {})
    categories = lighthouse.get("categories", {})
    audits = lighthouse.get("audits", {})

    return ExtractionResult(
        url=url,
        strategy=strategy,
        performance_score=_category_score(categories, "performance"),
        accessibility_score=_category_score(categories, "accessibility"),
        best_practices_score=_category_score(categories, "best-practices"),
        seo_score=_category_score(categories, "seo"),
        insights=extract_insights(audits, keys["opportunity"]),
        diagnostics=extract_diagnostics(audits, keys["diagnostic"]),
        general=extract_general(audits, keys["general"]),
        fetch_time=lighthouse.get("fetchTime"),
    )


def get_pagespeed_data(
    url: str,
    strategy: str,
    config: Config,
    session: requests.Session | None = None,
) -> ExtractionResult | None:
    """Validate, fetch and extract one (URL, strategy) pair. None on failure."""
    clean_url = validate_url(url)
    if not clean_url:
        logger.warning("Invalid URL, skipping: %s", url.strip())
        return None

    response = fetch_pagespeed_result(clean_url, strategy, config.api_key, session=session)
    if response is None:
        return None
    return extract_result(response, clean_url, strategy, config.audit_keys)


# ---------------------------------------------------------------------------
# Sheet Writer
# ---------------------------------------------------------------------------


class SheetBackend(Protocol):
    def ensure_sheet(self, name: str): ...

    def append_row(self, name: str, values: list, fill: str | None = None) -> None: ...

    def read_rows(self, name: str) -> list[tuple]: ...


class WorkbookBackend:
    """Spreadsheet storage in a local .xlsx workbook.

    Every mutation is saved straight away, so a run that aborts part way
    keeps the rows it already appended.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        if self.path.is_file():
            self.workbook = load_workbook(self.path)
            self._placeholder = None
        else:
            self.workbook = Workbook()
            # openpyxl starts new workbooks with an empty "Sheet"
            self._placeholder = self.workbook.active

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.workbook.save(self.path)

    def ensure_sheet(self, name: str):
        """Return the named sheet, creating it with the header block if needed."""
        title = sanitize_sheet_name(name)
        if self._placeholder is not None:
            self.workbook.remove(self._placeholder)
            self._placeholder = None
        existing = self._existing_title(title)
        if existing is not None:
            return self.workbook[existing]

        sheet = self.workbook.create_sheet(title)

        banner = sheet.cell(row=1, column=1, value=BANNER_LABEL)
        banner.font = Font(bold=True, size=14)
        banner.alignment = Alignment(horizontal="center")
        sheet.merge_cells(start_row=1, start_column=1, end_row=1, end_column=len(SHEET_HEADERS))

        for column, header in enumerate(SHEET_HEADERS, start=1):
            cell = sheet.cell(row=2, column=column, value=header)
            cell.font = Font(bold=True)

        sheet.freeze_panes = sheet.cell(row=HEADER_ROWS + 1, column=1)
        self.save()
        logger.info("Created sheet '%s' in %s", title, self.path)
        return sheet

    def _existing_title(self, title: str) -> str | None:
        # openpyxl treats titles as case-insensitive when creating sheets
        folded = title.casefold()
        for existing in self.workbook.sheetnames:
            if existing.casefold() == folded:
                return existing
        return None

    def _sheet(self, name: str):
        title = sanitize_sheet_name(name)
        existing = self._existing_title(title)
        if existing is None:
            raise PageSpeedError(f"sheet '{title}' does not exist in {self.path}")
        return self.workbook[existing]

    def append_row(self, name: str, values: list, fill: str | None = None) -> None:
        sheet = self._sheet(name)
        sheet.append(list(values))
        if fill:
            pattern = PatternFill(start_color=fill, end_color=fill, fill_type="solid")
            for cell in sheet[sheet.max_row]:
                cell.fill = pattern
        self.save()

    def read_rows(self, name: str) -> list[tuple]:
        sheet = self._sheet(name)
        return [tuple(row) for row in sheet.iter_rows(min_row=HEADER_ROWS + 1, values_only=True)]


def build_row(result: ExtractionResult, timestamp: datetime) -> list:
    """Lay out one result in sheet column order."""

    def score(value):
        return value if value is not None else NOT_AVAILABLE

    return [
        timestamp,
        result.url,
        result.strategy,
        score(result.performance_score),
        score(result.accessibility_score),
        score(result.best_practices_score),
        score(result.seo_score),
        result.insights or IN_PROGRESS,
        result.diagnostics or IN_PROGRESS,
        result.general or IN_PROGRESS,
    ]


def add_data_to_sheet(
    backend: SheetBackend,
    sheet_name: str,
    result: ExtractionResult,
    timestamp: datetime,
) -> None:
    backend.append_row(sheet_name, build_row(result, timestamp), fill=DEVICE_FILLS.get(result.strategy))
    logger.info("Data saved: %s (%s)", result.url, result.strategy)


def load_sheet_dataframe(path: str | Path, sheet_name: str) -> pd.DataFrame:
    """Read a sheet's data rows into a DataFrame keyed by the header row."""
    path = Path(path)
    if not path.is_file():
        raise PageSpeedError(f"workbook not found: {path}")
    title = sanitize_sheet_name(sheet_name)
    try:
        return pd.read_excel(path, sheet_name=title, header=HEADER_ROWS - 1, engine="openpyxl")
    except ValueError as exc:
        raise PageSpeedError(f"cannot read sheet '{title}' from {path}: {exc}") from exc


def output_csv(dataframe: pd.DataFrame, output_path: Path) -> str:
    """Write DataFrame to CSV. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, index=False)
    return str(output_path)


def format_json(dataframe: pd.DataFrame, sheet_name: str) -> str:
    """Render sheet rows as structured JSON with metadata."""
    records = json.loads(dataframe.to_json(orient="records", date_format="iso"))
    output_data = {
        "metadata": {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "sheet": sheet_name,
            "total_rows": len(dataframe),
            "total_urls": int(dataframe["Website"].nunique()) if "Website" in dataframe.columns else 0,
            "tool_version": __version__,
        },
        "results": records,
    }
    return json.dumps(output_data, indent=2, default=str)


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class EmailSender(Protocol):
    def send_email(self, to: str, subject: str, body: str) -> None: ...


class SmtpEmailSender:
    """Plain-text mail over SMTP."""

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_SMTP_PORT,
        sender: str | None = None,
        user: str | None = None,
        password: str | None = None,
        starttls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender or user
        self.user = user
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Config) -> SmtpEmailSender | None:
        if not config.smtp_host:
            return None
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            sender=config.smtp_from,
            user=config.smtp_user,
            password=config.smtp_password,
            starttls=config.smtp_starttls,
        )

    def send_email(self, to: str, subject: str, body: str) -> None:
        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = to
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.user and self.password:
                smtp.login(self.user, self.password)
            smtp.sendmail(self.sender, [to], message.as_string())


def spreadsheet_link(config: Config) -> str:
    if config.spreadsheet_url:
        return config.spreadsheet_url
    if config.spreadsheet:
        return Path(config.spreadsheet).resolve().as_uri()
    return ""


def send_notification(message: str, config: Config, sender: EmailSender | None) -> int:
    """Mail message to every recipient. Returns the number of emails sent."""
    if not config.email_notification or not config.notification_emails:
        return 0
    if sender is None:
        raise ConfigError("email notification is enabled but no mail sender is configured")

    body = f"{message}\n\nView Sheet:\n{spreadsheet_link(config)}"
    for recipient in config.notification_emails:
        sender.send_email(recipient, EMAIL_SUBJECT, body)
    logger.info("Email notification sent to %d recipient(s)", len(config.notification_emails))
    return len(config.notification_emails)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExtractionRun:
    """One pass over every configured URL and both device strategies.

    Per-pair fetch failures are skipped silently; anything else aborts the
    run, sends the failure notice and is re-raised to the caller.
    """

    def __init__(
        self,
        config: Config,
        backend: SheetBackend,
        sender: EmailSender | None = None,
        fetch: Callable[[str, str, Config], ExtractionResult | None] = get_pagespeed_data,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.backend = backend
        self.sender = sender
        self.fetch = fetch
        self.sleep = sleep
        self.clock = clock
        self.state = RunState.IDLE
        self.rows_written = 0
        self.sheet_names = assign_sheet_names(config.urls) if config.sheet_per_url else {}

    def sheet_name_for(self, url: str) -> str | None:
        if self.config.sheet_per_url:
            return self.sheet_names.get(validate_url(url))
        return self.config.sheet_name

    def execute(self) -> int:
        """Run to completion. Returns the number of rows appended."""
        if self.state is not RunState.IDLE:
            raise PageSpeedError(f"run already {self.state.value}")
        self.state = RunState.RUNNING
        logger.info("Starting PageSpeed data extraction for %d URL(s)", len(self.config.urls))

        try:
            if self.config.sheet_per_url:
                targets = list(self.sheet_names.values())
            else:
                targets = [self.config.sheet_name]
            for sheet_name in targets:
                self.backend.ensure_sheet(sheet_name)

            for url in self.config.urls:
                if validate_url(url) is None:
                    logger.warning("Skipping invalid URL: %s", url)
                    continue
                logger.info("Processing URL: %s", url)
                sheet_name = self.sheet_name_for(url)
                for strategy in STRATEGIES:
                    result = self.fetch(url, strategy, self.config)
                    if result is None:
                        continue
                    timestamp = self.clock().replace(microsecond=0)
                    add_data_to_sheet(self.backend, sheet_name, result, timestamp)
                    self.rows_written += 1
                self.sleep(self.config.delay)
        except Exception as exc:
            self.state = RunState.FAILED
            logger.error("PageSpeed extraction failed: %s", exc)
            try:
                send_notification(FAILURE_MESSAGE.format(error=exc), self.config, self.sender)
            except (smtplib.SMTPException, OSError, PageSpeedError) as notify_exc:
                logger.error("Failure notification could not be sent: %s", notify_exc)
            raise

        logger.info("PageSpeed extraction completed: %d row(s) written", self.rows_written)
        try:
            send_notification(SUCCESS_MESSAGE, self.config, self.sender)
        except Exception as exc:
            # rows are already in the sheet; the run still reports failure
            self.state = RunState.FAILED
            logger.error("Success notification could not be sent: %s", exc)
            raise
        self.state = RunState.SUCCEEDED
        return self.rows_written


def run_extraction(config: Config) -> int:
    """Build the production collaborators and execute one run."""
    backend = WorkbookBackend(config.spreadsheet)
    sender = SmtpEmailSender.from_config(config)
    return ExtractionRun(config, backend, sender).execute()


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


def build_scheduler(config: Config, job: Callable[[], object]) -> BlockingScheduler:
    """Register job once, firing at every configured daily slot.

    All slots share a single job, so a slot that fires while any earlier
    run is still going is skipped instead of starting a second run.
    """
    scheduler_kwargs = {"timezone": config.timezone} if config.timezone else {}
    scheduler = BlockingScheduler(**scheduler_kwargs)
    slot_triggers = []
    for hour, minute in config.schedule_times:
        trigger_kwargs = {"hour": hour, "minute": minute}
        if config.timezone:
            trigger_kwargs["timezone"] = config.timezone
        slot_triggers.append(CronTrigger(**trigger_kwargs))
        logger.info("Scheduled daily at %02d:%02d", hour, minute)

    slots = ", ".join(f"{hour:02d}:{minute:02d}" for hour, minute in config.schedule_times)
    scheduler.add_job(
        job,
        OrTrigger(slot_triggers),
        id=SCHEDULER_JOB_ID,
        name=f"PageSpeed extraction at {slots}",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler


# ---------------------------------------------------------------------------
# Terminal Output
# ---------------------------------------------------------------------------


def format_terminal_table(results: dict | list[dict]) -> str:
    """Format extraction results as an aligned terminal table."""
    if isinstance(results, dict):
        results = [results]

    lines = []
    for row_data in results:
        lines.append(f"\n{'=' * 60}")
        lines.append(f"  URL:      {row_data.get('url', '?')}")
        lines.append(f"  Strategy: {row_data.get('strategy', '?')}")

        error = row_data.get("error")
        if error:
            lines.append(f"  Error:    {error}")
            lines.append(f"{'=' * 60}")
            continue
        lines.append(f"{'=' * 60}")

        score = row_data.get("performance_score")
        if score is not None:
            score_indicator = "GOOD" if score >= 90 else ("NEEDS WORK" if score >= 50 else "POOR")
            lines.append(f"  Performance Score: {score}/100 ({score_indicator})")
        for label, key in [("Accessibility", "accessibility_score"), ("Best Practices", "best_practices_score"), ("SEO", "seo_score")]:
            val = row_data.get(key)
            lines.append(f"  {label}: {val}/100" if val is not None else f"  {label}: {NOT_AVAILABLE}")

        for label, key in [("Insights", "insights"), ("Diagnostics", "diagnostics"), ("General", "general")]:
            lines.append("")
            lines.append(f"  --- {label} ---")
            text = row_data.get(key) or "(none)"
            lines.extend(f"  {line}" for line in text.splitlines())

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _config_or_exit(args: argparse.Namespace, **requirements) -> Config:
    try:
        return build_config(args, **requirements)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_run(args: argparse.Namespace) -> None:
    """Run one extraction; errors propagate so the exit status reflects them."""
    config = _config_or_exit(args)
    rows_written = run_extraction(config)
    print(f"Wrote {rows_written} row(s) to {config.spreadsheet}", file=sys.stderr)


def cmd_check(args: argparse.Namespace) -> None:
    """Fetch a single URL and print the extraction without touching the sheet."""
    config = _config_or_exit(args, require_urls=False, require_spreadsheet=False)
    url = validate_url(args.url)
    if not url:
        print(f"Error: invalid URL: {args.url}", file=sys.stderr)
        sys.exit(1)

    strategies = list(STRATEGIES) if args.strategy == "both" else [args.strategy]
    results = []
    for strategy in strategies:
        result = get_pagespeed_data(url, strategy, config)
        if result is None:
            results.append({"url": url, "strategy": strategy, "error": "no data (see log)"})
        else:
            results.append(asdict(result))
    print(format_terminal_table(results))


def cmd_schedule(args: argparse.Namespace) -> None:
    """Block forever, running an extraction at every configured slot."""
    config = _config_or_exit(args)
    if not config.schedule_times:
        print("Error: no schedule_times configured", file=sys.stderr)
        sys.exit(1)
    scheduler = build_scheduler(config, lambda: run_extraction(config))
    print(f"Scheduler started with {len(config.schedule_times)} daily slot(s). Press Ctrl-C to stop.", file=sys.stderr)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        print("Automation stopped.", file=sys.stderr)


def cmd_export(args: argparse.Namespace) -> None:
    """Write a sheet's rows as CSV or JSON."""
    config = _config_or_exit(args, require_urls=False)
    try:
        dataframe = load_sheet_dataframe(config.spreadsheet, config.sheet_name)
    except PageSpeedError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    output = getattr(args, "output", None)
    if args.output_format == "json":
        content = format_json(dataframe, config.sheet_name)
        if output:
            Path(output).parent.mkdir(parents=True, exist_ok=True)
            Path(output).write_text(content)
        else:
            print(content)
    elif output:
        output_csv(dataframe, Path(output))
    else:
        dataframe.to_csv(sys.stdout, index=False)

    if output:
        print(f"Exported {len(dataframe)} row(s) to {output}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    file_config = load_config(config_path)
    args = apply_profile(args, file_config, getattr(args, "profile", None))

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    commands = {
        "run": cmd_run,
        "check": cmd_check,
        "schedule": cmd_schedule,
        "export": cmd_export,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
