"""Directory listing parser for ftpkit.

Turns raw LIST/NLST bodies into DirectoryEntry objects. Server output is
not standardized, so each line is routed by shape to either the Unix
(ls -l) or the MS-DOS (dir) parser.
"""

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

logger = logging.getLogger("ftpkit.listing")


MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

UNIX_PERMISSIONS = re.compile(r"^[-bcdlpsDn][-rwxsStTlL]{9}[+@.]?$")

UNIX_LINE = re.compile(
    r"^(?P<perms>[-bcdlpsDn][-rwxsStTlL]{9})[+@.]?\s+"
    r"(?:\d+\s+)?"
    r"(?:(?P<owner>\S+)\s+)?"
    r"(?:(?P<group>\S+)\s+)?"
    r"(?P<size>\d+)\s+"
    r"(?P<month>[A-Za-z]{3})\s+(?P<day>\d{1,2})\s+"
    r"(?P<time>\d{1,2}:\d{2}|\d{4})\s+"
    r"(?P<name>.+)$"
)

DOS_DATE = re.compile(r"^\d{1,2}[-/]\d{1,2}[-/](?:\d{2}|\d{4})$")

DOS_LINE = re.compile(
    r"^(?P<date>\d{1,2}[-/]\d{1,2}[-/](?:\d{2}|\d{4}))\s+"
    r"(?P<time>\d{1,2}:\d{2}(?::\d{2})?)\s*(?P<ampm>[AaPp][Mm])?\s+"
    r"(?P<size><DIR>|[\d,]+)\s+"
    r"(?P<name>.+)$"
)


class EntryType(Enum):
    """Type of a directory entry."""
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DirectoryEntry:
    """One parsed line of a directory listing."""
    name: str
    type: EntryType
    size: int = 0
    modified: Optional[datetime] = None
    permissions: Optional[int] = None
    link_target: Optional[str] = None
    raw: str = ""

    @property
    def is_hidden(self) -> bool:
        """True for dot-files."""
        return self.name.startswith(".")

    @property
    def is_directory(self) -> bool:
        return self.type == EntryType.DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.type == EntryType.FILE

    @property
    def is_symlink(self) -> bool:
        return self.type == EntryType.SYMLINK


def parse_unix_mode(mode: str) -> int:
    """
    Convert a 9-character permission string ("rwxr-x--t") to mode bits.

    Raises:
        ValueError: If a character is not valid in its position
    """
    read_write = {"rw": 6, "r-": 4, "-w": 2, "--": 0}
    bits = 0
    bits |= read_write[mode[0:2]] << 6
    bits |= read_write[mode[3:5]] << 3
    bits |= read_write[mode[6:8]]

    special = (
        (mode[2], 0o0100, 0o4000, "sS"),
        (mode[5], 0o0010, 0o2000, "sS"),
        (mode[8], 0o0001, 0o1000, "tT"),
    )
    for char, exec_bit, special_bit, markers in special:
        if char == "x":
            bits |= exec_bit
        elif char == markers[0]:
            bits |= exec_bit | special_bit
        elif char == markers[1]:
            bits |= special_bit
        elif char != "-":
            raise ValueError(f"Invalid permission character: {char!r}")

    return bits


class ListingParser:
    """Parses LIST and NLST response bodies."""

    def __init__(self, show_hidden: bool = False, now: Optional[datetime] = None):
        """
        Initialize the parser.

        Args:
            show_hidden: Include entries whose name starts with '.'
            now: Reference time for year inference on recent Unix dates
        """
        self.show_hidden = show_hidden
        self._now = now or datetime.now()

    def parse(self, text: str) -> List[DirectoryEntry]:
        """
        Parse a LIST body.

        Unparseable lines are skipped.

        Args:
            text: Raw listing text

        Returns:
            Entries in listing order
        """
        entries: List[DirectoryEntry] = []
        skipped = 0

        for line in text.splitlines():
            if not line.strip():
                continue
            entry = self.parse_line(line)
            if entry is None:
                skipped += 1
                continue
            if entry.name in (".", ".."):
                continue
            if entry.is_hidden and not self.show_hidden:
                continue
            entries.append(entry)

        if skipped:
            logger.debug(f"Skipped {skipped} unparseable listing lines")
        return entries

    def parse_names(self, text: str) -> List[str]:
        """
        Parse an NLST body into names.

        Args:
            text: Raw name listing

        Returns:
            Names in listing order
        """
        names = []
        for line in text.splitlines():
            name = line.strip("\r\n")
            if not name.strip():
                continue
            base = name.rstrip("/").rsplit("/", 1)[-1]
            if base in (".", ".."):
                continue
            if base.startswith(".") and not self.show_hidden:
                continue
            names.append(name)
        return names

    def parse_line(self, line: str) -> Optional[DirectoryEntry]:
        """
        Parse a single listing line.

        Returns:
            DirectoryEntry, or None if the line has no recognized shape
        """
        line = line.rstrip("\r\n")
        tokens = line.split(None, 1)
        if not tokens:
            return None

        first = tokens[0]
        try:
            if UNIX_PERMISSIONS.match(first):
                return self._parse_unix_line(line)
            if DOS_DATE.match(first):
                return self._parse_dos_line(line)
        except (ValueError, KeyError, IndexError) as e:
            logger.debug(f"Failed to parse listing line {line!r}: {e}")
        return None

    def _parse_unix_line(self, line: str) -> Optional[DirectoryEntry]:
        match = UNIX_LINE.match(line)
        if not match:
            return None

        perms = match.group("perms")
        kind = {
            "-": EntryType.FILE,
            "d": EntryType.DIRECTORY,
            "l": EntryType.SYMLINK,
        }.get(perms[0], EntryType.UNKNOWN)

        name = match.group("name")
        link_target = None
        if kind == EntryType.SYMLINK and " -> " in name:
            name, link_target = name.split(" -> ", 1)

        return DirectoryEntry(
            name=name,
            type=kind,
            size=int(match.group("size")),
            modified=self._parse_unix_date(
                match.group("month"), match.group("day"), match.group("time")
            ),
            permissions=parse_unix_mode(perms[1:10]),
            link_target=link_target,
            raw=line,
        )

    def _parse_unix_date(self, month: str, day: str, time_or_year: str) -> datetime:
        month_number = MONTHS[month.lower()]
        day_number = int(day)
        if ":" not in time_or_year:
            return datetime(int(time_or_year), month_number, day_number)

        hour, minute = (int(part) for part in time_or_year.split(":"))
        leap_day = month_number == 2 and day_number == 29

        year = self._now.year
        while leap_day and not calendar.isleap(year):
            year -= 1
        value = datetime(year, month_number, day_number, hour, minute)

        # ls only prints a time for recent files, so a future date is last year's
        if value > self._now + timedelta(days=1):
            year -= 4 if leap_day else 1
            value = value.replace(year=year)
        return value

    def _parse_dos_line(self, line: str) -> Optional[DirectoryEntry]:
        match = DOS_LINE.match(line)
        if not match:
            return None

        size_field = match.group("size")
        if size_field == "<DIR>":
            kind = EntryType.DIRECTORY
            size = 0
        else:
            kind = EntryType.FILE
            size = int(size_field.replace(",", ""))

        return DirectoryEntry(
            name=match.group("name"),
            type=kind,
            size=size,
            modified=self._parse_dos_date(
                match.group("date"), match.group("time"), match.group("ampm")
            ),
            raw=line,
        )

    @staticmethod
    def _parse_dos_date(date: str, time: str, ampm: Optional[str]) -> datetime:
        month, day, year = (int(part) for part in re.split(r"[-/]", date))
        if year < 100:
            year += 2000 if year < 70 else 1900

        time_parts = [int(part) for part in time.split(":")]
        hour, minute = time_parts[0], time_parts[1]
        second = time_parts[2] if len(time_parts) > 2 else 0

        if ampm:
            ampm = ampm.upper()
            if hour == 12:
                hour = 0
            if ampm == "PM":
                hour += 12

        return datetime(year, month, day, hour, minute, second)
