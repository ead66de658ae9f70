#!/usr/bin/env python3
"""
SonarQube Rules Extractor

Extracts the rules catalog from a SonarQube instance (rules search API) and
generates an Excel spreadsheet with one row per rule.

Data flow:
1. Rules search API → paginated JSON pages, accumulated into one catalog
2. Catalog → "Rules" worksheet, one column per requested header

Usage:
    python sonar_rules_extractor.py -o OUTPUT [-l java,js] [-d 2016-09-01] [-e key,name]
"""

import argparse
import io
import os
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Optional

import requests
import xlsxwriter

# Rules search API
PUBLIC_SEARCH_URI = "https://sonarqube.com/api/rules/search"
DEFAULT_LANGUAGE = "java"
PAGE_SIZE = 500
REQUEST_TIMEOUT_SECONDS = 30

# Exit codes
EXIT_OK = 0
EXIT_TRANSPORT_ERROR = 1
EXIT_USAGE = 2
EXIT_NO_RULES = 3

# Output file naming when the output is a directory
DEFAULT_FILE_PREFIX = "extract-"
DEFAULT_FILE_SUFFIX = ".xlsx"

SHEET_NAME = "Rules"
DATE_FORMAT = "yyyy-mm-dd"

DEFAULT_HEADERS = [
    "id", "key", "status", "name", "createdAt", "langName", "htmlDesc",
    "severity", "status", "sysTags", "type", "source", "category",
    "remFnType", "remFnBaseEffort", "repo", "comment",
]

# SonarQube releases, usable as cut-off dates (-r)
SONARQUBE_RELEASES = {
    "6.3.1": date(2017, 4, 12), "6.3": date(2017, 3, 14),
    "6.2": date(2016, 12, 14), "6.1": date(2016, 10, 13), "6.0": date(2016, 8, 4),
    "5.6.6": date(2017, 2, 17), "5.6.5": date(2017, 1, 19), "5.6.4": date(2016, 12, 12),
    "5.6.3": date(2016, 10, 4), "5.6.2": date(2016, 9, 19), "5.6.1": date(2016, 7, 27),
    "5.6": date(2016, 6, 3), "5.5": date(2016, 5, 3), "5.4": date(2016, 3, 9),
    "5.3": date(2016, 1, 11), "5.2": date(2015, 11, 2), "5.1.2": date(2015, 7, 27),
    "5.1.1": date(2015, 6, 5), "5.0.1": date(2015, 2, 24), "5.0": date(2015, 1, 14),
    "4.5.7": date(2016, 4, 8), "4.5.6": date(2015, 10, 16), "4.5.5": date(2015, 7, 30),
    "4.5.4": date(2015, 2, 26), "4.5.2": date(2015, 1, 7), "4.5.1": date(2014, 10, 29),
    "4.5": date(2014, 9, 29), "4.4.1": date(2014, 9, 26), "4.4": date(2014, 7, 31),
    "4.3.3": date(2014, 7, 31), "4.3.2": date(2014, 6, 24), "4.3.1": date(2014, 6, 4),
    "4.3": date(2014, 5, 2), "4.2": date(2014, 3, 26), "4.1.2": date(2014, 2, 20),
    "4.1.1": date(2014, 1, 28), "4.1": date(2014, 1, 13), "4.0": date(2013, 11, 7),
    "3.7.4": date(2013, 12, 20), "3.7.3": date(2013, 10, 21), "3.7.2": date(2013, 10, 2),
    "3.7.1": date(2013, 9, 23), "3.7": date(2013, 8, 14), "3.6.3": date(2013, 8, 14),
    "3.6.2": date(2013, 7, 18), "3.6.1": date(2013, 7, 12), "3.6": date(2013, 6, 26),
    "3.5.1": date(2013, 4, 3), "3.5": date(2013, 3, 13), "3.4.1": date(2013, 1, 8),
    "3.4": date(2012, 12, 22), "3.3.2": date(2012, 11, 21), "3.3.1": date(2012, 11, 7),
    "3.3": date(2012, 10, 24), "3.2.1": date(2012, 10, 3), "3.2": date(2012, 8, 6),
    "3.1.1": date(2012, 6, 25), "3.1": date(2012, 6, 13), "3.0.1": date(2012, 5, 14),
    "3.0": date(2012, 4, 17), "2.14": date(2012, 3, 19), "2.13.1": date(2012, 1, 31),
    "2.12": date(2011, 11, 30), "2.11": date(2011, 10, 3), "2.10": date(2011, 8, 18),
    "2.9": date(2011, 7, 18), "2.8": date(2011, 5, 19), "2.7": date(2011, 4, 1),
    "2.6": date(2011, 2, 18), "2.5": date(2011, 1, 14), "2.4.1": date(2010, 11, 18),
    "2.3.1": date(2010, 10, 22), "2.2": date(2010, 7, 15), "2.1.2": date(2010, 5, 20),
    "2.0.1": date(2010, 3, 10), "1.12": date(2009, 12, 7), "1.11.1": date(2009, 10, 20),
    "1.11": date(2009, 10, 5), "1.10.1": date(2009, 8, 19), "1.10": date(2009, 8, 14),
    "1.9.2": date(2009, 6, 8), "1.9": date(2009, 5, 25), "1.8": date(2009, 4, 17),
    "1.7": date(2009, 3, 18), "1.6": date(2009, 2, 9), "1.5.1": date(2009, 1, 8),
    "1.5": date(2008, 12, 16), "1.4.3": date(2008, 10, 16), "1.4.2": date(2008, 9, 25),
    "1.4.1": date(2008, 8, 23), "1.4": date(2008, 8, 7), "1.3": date(2008, 6, 16),
    "1.2.1": date(2008, 4, 30), "1.2": date(2008, 3, 26), "1.1": date(2008, 2, 25),
    "1.0.2": date(2007, 12, 14),
}


def release_date(version: str) -> date:
    """Release date of a SonarQube version, KeyError if unknown."""
    return SONARQUBE_RELEASES[version]


class ExtractorError(Exception):
    """Base error for the rules extractor."""


class TransportError(ExtractorError):
    """A page could not be fetched or decoded."""


@dataclass
class Console:
    """Print and flush immediately; info messages only when verbose."""
    verbose: bool = False

    def info(self, msg: str):
        if self.verbose:
            print(msg)
            sys.stdout.flush()

    def warn(self, msg: str):
        print(msg, file=sys.stderr)
        sys.stderr.flush()


@dataclass(frozen=True)
class Query:
    """One rules search, fixed for the duration of a fetch."""
    base_uri: str = PUBLIC_SEARCH_URI
    language: str = DEFAULT_LANGUAGE  # Comma-separated language codes
    cutoff: Optional[date] = None  # available_since filter
    page_size: int = PAGE_SIZE

    def params(self, page: int) -> dict:
        params = {"languages": self.language, "ps": self.page_size, "p": page}
        if self.cutoff is not None:
            params["available_since"] = self.cutoff.isoformat()
        return params


@dataclass
class PageResponse:
    """One decoded page of the rules search API."""
    p: int
    total: int
    rules: list = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any, page: int) -> "PageResponse":
        if not isinstance(data, dict):
            raise TransportError(f"Page {page}: expected a JSON object, got {type(data).__name__}")
        total = data.get("total")
        rules = data.get("rules")
        if not isinstance(total, int) or isinstance(total, bool):
            raise TransportError(f"Page {page}: missing or invalid 'total'")
        if not isinstance(rules, list):
            raise TransportError(f"Page {page}: missing or invalid 'rules'")
        if not all(isinstance(rule, dict) for rule in rules):
            raise TransportError(f"Page {page}: invalid 'rules' entry")
        p = data.get("p", page)
        return cls(p=p if isinstance(p, int) else page, total=total, rules=rules)


@dataclass
class Catalog:
    """Rules accumulated across the pages of one fetch."""
    page: int = 0
    total: int = 0
    rules: list[dict] = field(default_factory=list)

    def merge(self, response: PageResponse):
        self.page = response.p
        self.total = response.total
        self.rules.extend(response.rules)


# =========================================================================
# Catalog fetcher
# =========================================================================
class RulesCatalogFetcher:
    """Fetches the whole rules catalog matching a query, page by page."""

    def __init__(self, session: Optional[requests.Session] = None,
                 console: Optional[Console] = None,
                 timeout: int = REQUEST_TIMEOUT_SECONDS):
        self.console = console or Console()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": "SonarQube-Rules-Extractor/1.0",
            "Accept": "application/json"
        })

    def _fetch_page(self, query: Query, page: int) -> PageResponse:
        """Fetch and decode a single page."""
        try:
            response = self.session.get(query.base_uri, params=query.params(page), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"Page {page}: request to {query.base_uri} failed: {e}") from e
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Page {page}: response is not valid JSON: {e}") from e
        return PageResponse.from_json(data, page)

    def fetch(self, query: Query) -> list[dict]:
        """Fetch every page of the query and return all the rules.

        The server re-reports the grand total on each page, so the page count
        is recomputed from the latest total after every fetch. The first page
        is always fetched, whatever the total.
        """
        catalog = Catalog()
        page = 0
        while True:
            page += 1
            response = self._fetch_page(query, page)
            catalog.merge(response)

            total_pages = catalog.total // query.page_size
            self.console.info(
                f"  Page {page}: {len(response.rules)} rules "
                f"(total {catalog.total}, {len(catalog.rules)} fetched)"
            )
            if page > total_pages:
                break

        return catalog.rules


# =========================================================================
# Column accessors
# =========================================================================
def _parse_timestamp(value: Any) -> Any:
    """API timestamps look like 2013-08-28T16:24:41+0200; anything else is kept."""
    if not isinstance(value, str):
        return value
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return value


def _field(name: str) -> Callable[[dict], Any]:
    return lambda rule: rule.get(name)


def _timestamp_field(name: str) -> Callable[[dict], Any]:
    return lambda rule: _parse_timestamp(rule.get(name))


def _params_field(rule: dict) -> Any:
    params = rule.get("params")
    if not params:
        return None
    return [p.get("key", "") if isinstance(p, dict) else p for p in params]


RULE_FIELDS: dict[str, Callable[[dict], Any]] = {
    name: _field(name) for name in (
        "id", "key", "repo", "name", "htmlDesc", "mdDesc", "htmlNote", "mdNote",
        "severity", "status", "isTemplate", "templateKey", "tags", "sysTags",
        "lang", "langName", "type", "source", "category", "comment", "scope",
        "isExternal", "internalKey", "noteLogin",
        "defaultDebtChar", "defaultDebtSubChar", "debtChar", "debtSubChar",
        "debtCharName", "debtSubCharName", "debtOverloaded",
        "defaultDebtRemFnType", "defaultDebtRemFnCoeff", "defaultDebtRemFnOffset",
        "debtRemFnType", "debtRemFnCoeff", "debtRemFnOffset",
        "effortToFixDescription", "gapDescription",
        "defaultRemFnType", "defaultRemFnGapMultiplier", "defaultRemFnBaseEffort",
        "remFnType", "remFnGapMultiplier", "remFnBaseEffort", "remFnOverloaded",
    )
}
RULE_FIELDS["createdAt"] = _timestamp_field("createdAt")
RULE_FIELDS["updatedAt"] = _timestamp_field("updatedAt")
RULE_FIELDS["params"] = _params_field


def resolve_column(rule: dict, column: str) -> Any:
    """Value of a column for a rule, None when the column is unknown."""
    accessor = RULE_FIELDS.get(column)
    return accessor(rule) if accessor else None


# =========================================================================
# Workbook exporter
# =========================================================================
def resolve_output_path(output: str, language: str) -> str:
    """Use the output path as-is, or create a new file when it is a directory."""
    if os.path.isdir(output):
        fd, path = tempfile.mkstemp(
            prefix=DEFAULT_FILE_PREFIX,
            suffix=f"-{language}{DEFAULT_FILE_SUFFIX}",
            dir=output,
        )
        os.close(fd)
        return path
    return output


class RulesWorkbookExporter:
    """Writes rules to a single "Rules" worksheet using xlsxwriter."""

    def __init__(self, columns: list[str], console: Optional[Console] = None, as_table: bool = False):
        # Duplicate headers collapse onto their first occurrence
        self.columns = list(dict.fromkeys(columns))
        self.console = console or Console()
        self.as_table = as_table

    def _write_cell(self, ws, row: int, col: int, value: Any, date_format):
        if value is None:
            ws.write_blank(row, col, None)
        elif isinstance(value, bool):
            ws.write_string(row, col, "true" if value else "false")
        elif isinstance(value, (datetime, date)):
            ws.write_datetime(row, col, value, date_format)
        elif isinstance(value, (list, tuple)):
            ws.write_string(row, col, ", ".join(str(v) for v in value))
        else:
            ws.write_string(row, col, str(value))

    def _add_table(self, ws, rule_count: int):
        # A table needs at least one data row below its header
        last_row = max(rule_count, 1)
        ws.add_table(0, 0, last_row, len(self.columns) - 1, {
            'name': SHEET_NAME,
            'style': 'Table Style Medium 2',
            'banded_rows': True,
            'banded_columns': False,
            'total_row': False,
            'columns': [{'header': c} for c in self.columns],
        })

    def write(self, rules: list[dict], output):
        """Write the workbook to a file path or a binary file object."""
        options = {'remove_timezone': True}
        if not isinstance(output, (str, os.PathLike)):
            options['in_memory'] = True
        wb = xlsxwriter.Workbook(output, options)
        try:
            date_format = wb.add_format({'num_format': DATE_FORMAT})
            ws = wb.add_worksheet(SHEET_NAME)

            if self.as_table and self.columns:
                self._add_table(ws, len(rules))
            else:
                for col, h in enumerate(self.columns):
                    ws.write_string(0, col, h)

            for row_idx, rule in enumerate(rules, 1):
                for col, column in enumerate(self.columns):
                    self._write_cell(ws, row_idx, col, resolve_column(rule, column), date_format)
        finally:
            wb.close()
        self.console.info(f"  Saved: {len(rules)} rules, {len(self.columns)} columns")

    def to_bytes(self, rules: list[dict]) -> bytes:
        """Return the workbook as .xlsx bytes."""
        buffer = io.BytesIO()
        self.write(rules, buffer)
        return buffer.getvalue()


# =========================================================================
# Configuration and entry point
# =========================================================================
@dataclass
class ExtractorConfig:
    """Validated command line configuration."""
    output: str
    language: str = DEFAULT_LANGUAGE
    search_uri: str = PUBLIC_SEARCH_URI
    cutoff: Optional[date] = None
    headers: list[str] = field(default_factory=list)
    verbose: bool = False
    as_table: bool = False

    def __post_init__(self):
        if not self.headers:
            self.headers = list(DEFAULT_HEADERS)

    def query(self) -> Query:
        return Query(base_uri=self.search_uri, language=self.language, cutoff=self.cutoff)


class RulesExtractor:
    """Fetches the rules catalog and writes it to the output workbook."""

    def __init__(self, config: ExtractorConfig, console: Optional[Console] = None,
                 session: Optional[requests.Session] = None):
        self.config = config
        self.console = console or Console(verbose=config.verbose)
        self.fetcher = RulesCatalogFetcher(session=session, console=self.console)
        self.exporter = RulesWorkbookExporter(config.headers, console=self.console, as_table=config.as_table)

    def run(self) -> int:
        """Run the extraction and return the exit code."""
        query = self.config.query()
        self.console.info(f"Fetching {query.language} rules from {query.base_uri}")
        if query.cutoff:
            self.console.info(f"  Available since {query.cutoff.isoformat()}")

        rules = self.fetcher.fetch(query)
        if not rules:
            self.console.warn("Empty rules list, can not generate anything")
            return EXIT_NO_RULES
        self.console.info(f"Found {len(rules)} rules")

        target = resolve_output_path(self.config.output, self.config.language)
        self.console.info(f"Generating file {target}")
        with open(target, "wb") as out:
            self.exporter.write(rules, out)
        return EXIT_OK


def _header_list(value: str) -> list[str]:
    return [h.strip() for h in value.split(",") if h.strip()]


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO date: {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sonar-rules-extractor",
        description="Extract rules from a SonarQube instance into an Excel file",
        add_help=False,
    )
    parser.add_argument("-v", dest="verbose", action="store_true",
                        help="Verbose, print more log (info, errors ...)")
    parser.add_argument("-help", "-h", dest="help", action="store_true", help="Shows this help")
    parser.add_argument("-l", dest="language", default=DEFAULT_LANGUAGE,
                        help="Language codes to extract, comma separated (default: java)")
    parser.add_argument("-s", dest="search_uri", default=PUBLIC_SEARCH_URI,
                        help="Rules search URI (default: the public SonarQube search API)")
    cutoff = parser.add_mutually_exclusive_group()
    cutoff.add_argument("-d", dest="cutoff", type=_iso_date,
                        help="Only rules available since this date (YYYY-MM-DD)")
    cutoff.add_argument("-r", dest="release",
                        help="Only rules available since this SonarQube release (e.g. 5.6)")
    parser.add_argument("-o", dest="output", help="Output file, or directory to create it in (required)")
    parser.add_argument("-e", dest="headers", type=_header_list, action="extend", default=[],
                        help="Column headers to display, comma separated")
    parser.add_argument("-t", dest="as_table", action="store_true",
                        help="Write the rules as a styled Excel table")
    return parser


def parse_args(argv: Optional[list[str]] = None) -> Optional[ExtractorConfig]:
    """Parse the command line. Returns None when help was requested."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.help:
        parser.print_help()
        return None
    if not args.output:
        parser.error("the following arguments are required: -o")

    cutoff_date = args.cutoff
    if args.release:
        try:
            cutoff_date = release_date(args.release)
        except KeyError:
            parser.error(f"unknown SonarQube release: {args.release}")

    return ExtractorConfig(
        output=args.output,
        language=args.language,
        search_uri=args.search_uri,
        cutoff=cutoff_date,
        headers=args.headers,
        verbose=args.verbose,
        as_table=args.as_table,
    )


def main(argv: Optional[list[str]] = None) -> int:
    config = parse_args(argv)
    if config is None:
        return EXIT_USAGE

    extractor = RulesExtractor(config)
    try:
        return extractor.run()
    except TransportError as e:
        extractor.console.warn(f"Extraction failed: {e}")
        return EXIT_TRANSPORT_ERROR


if __name__ == "__main__":
    sys.exit(main())
