"""Reading and writing the operator-editable mapping CSVs.

Cells are trimmed, CRLF and LF endings may be mixed and the last row may lack
a line terminator.
"""

import csv
import io
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from sonar_migrate.errors import ValidationError

logger = structlog.get_logger(__name__)

INCLUDE_COLUMN = "Include"
INCLUDED_TOKENS = frozenset({"yes", "true", "1"})

PROJECTS_CSV = "projects.csv"
GATE_MAPPINGS_CSV = "gate-mappings.csv"
PROFILE_MAPPINGS_CSV = "profile-mappings.csv"
GROUP_MAPPINGS_CSV = "group-mappings.csv"
GLOBAL_PERMISSIONS_CSV = "global-permissions.csv"
TEMPLATE_MAPPINGS_CSV = "template-mappings.csv"
PORTFOLIO_MAPPINGS_CSV = "portfolio-mappings.csv"
ORGANIZATIONS_CSV = "organizations.csv"

RECOGNIZED_FILES = (
    PROJECTS_CSV,
    GATE_MAPPINGS_CSV,
    PROFILE_MAPPINGS_CSV,
    GROUP_MAPPINGS_CSV,
    GLOBAL_PERMISSIONS_CSV,
    TEMPLATE_MAPPINGS_CSV,
    PORTFOLIO_MAPPINGS_CSV,
)


@dataclass(slots=True)
class OverrideTable:
    """A parsed CSV: ordered headers and rows keyed by header."""

    headers: list[str] = field(default_factory=list)
    rows: list[dict[str, str]] = field(default_factory=list)

    def has_column(self, name: str) -> bool:
        return name in self.headers

    def group_by(self, column: str) -> dict[str, list[dict[str, str]]]:
        """Group rows by the value of one column, keeping file order."""
        grouped: dict[str, list[dict[str, str]]] = {}
        for row in self.rows:
            grouped.setdefault(row.get(column, ""), []).append(row)
        return grouped


def is_included(value: str | None) -> bool:
    """Interpret an ``Include`` cell.

    Empty or missing means included. Otherwise only ``yes``, ``true`` and
    ``1`` (case-insensitive, surrounding whitespace ignored) are included.
    """
    if value is None or value == "":
        return True
    return str(value).strip().lower() in INCLUDED_TOKENS


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_csv(text: str) -> OverrideTable:
    """Parse RFC 4180 CSV content. The first row is the header row.

    Args:
        text: Raw CSV content.

    Returns:
        The parsed table. Blank lines are skipped and short rows are padded
        with empty strings. A quoted field still open at the end of the
        content runs to the end and becomes the last field.

    Raises:
        ValidationError: If the reader rejects the content, e.g. a field over
            the size limit.
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff"), newline=""))
    try:
        raw_rows = [raw for raw in reader if raw and raw != [""]]
    except csv.Error as e:
        raise ValidationError(f"Malformed CSV content: {e}") from e
    if not raw_rows:
        return OverrideTable()

    headers = [h.strip() for h in raw_rows[0]]
    rows = [
        {
            header: raw[j].strip() if j < len(raw) else ""
            for j, header in enumerate(headers)
        }
        for raw in raw_rows[1:]
    ]
    return OverrideTable(headers=headers, rows=rows)


def write_csv(rows: Iterable[Sequence[Any]]) -> str:
    """Serialize rows (header row first) into CSV text with LF endings.

    ``None`` is written as an empty cell and booleans as ``true``/``false``.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows([_cell(v) for v in row] for row in rows)
    return buffer.getvalue()


def parse_csv_file(path: Path) -> OverrideTable:
    return parse_csv(path.read_text(encoding="utf-8"))


def load_directory(mappings_dir: Path) -> dict[str, OverrideTable]:
    """Load every ``*.csv`` file of a mappings directory.

    Files that cannot be read or parsed, or that are empty, are skipped with a
    warning. A missing directory yields no tables.

    Args:
        mappings_dir: Directory produced by a dry run, possibly operator-edited.

    Returns:
        Mapping of file name to parsed table.
    """
    tables: dict[str, OverrideTable] = {}
    mappings_dir = Path(mappings_dir)
    if not mappings_dir.is_dir():
        logger.warning("Mappings directory not found", path=str(mappings_dir))
        return tables

    for csv_path in sorted(mappings_dir.glob("*.csv")):
        try:
            table = parse_csv_file(csv_path)
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning(
                "Skipping unreadable mapping file", file=csv_path.name, error=str(e)
            )
            continue

        if not table.headers or not table.rows:
            logger.warning("Skipping empty mapping file", file=csv_path.name)
            continue

        if csv_path.name not in RECOGNIZED_FILES:
            logger.debug("Loaded informational mapping file", file=csv_path.name)

        tables[csv_path.name] = table
        logger.debug("Loaded mapping file", file=csv_path.name, rows=len(table.rows))

    return tables
