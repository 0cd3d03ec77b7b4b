"""
Loading of the user mapping file.

The mapping file is a CSV with the header
``SourceUser,TargetUser,SourceDisplayName,TargetDisplayName,Notes``.  Only
``SourceUser`` and ``TargetUser`` are mandatory; blank optional cells fall
back to the raw identity string.  Rows with an empty ``TargetUser`` become
*skip* entries: they are kept (so a rewrite can tell
"deliberately left alone" from "unknown") but never substituted.
"""

from __future__ import annotations

import csv
import logging
import os
from collections import OrderedDict
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from identity_remap.models.identity import MappingEntry
from identity_remap.utils.errors import MappingFileFormatError
from identity_remap.utils.identity_tokens import normalize_identity

log = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("SourceUser", "TargetUser")
OPTIONAL_COLUMNS = ("SourceDisplayName", "TargetDisplayName", "Notes")
MAPPING_COLUMNS = REQUIRED_COLUMNS + OPTIONAL_COLUMNS


class MappingTable:
    """Read-only, case-insensitive view of mapping entries keyed by source identity."""

    def __init__(self, entries: Iterable[MappingEntry] = (), *, source: str = "") -> None:
        ordered: "OrderedDict[str, MappingEntry]" = OrderedDict()
        for entry in entries:
            ordered[entry.key] = entry
        self._entries: Mapping[str, MappingEntry] = MappingProxyType(ordered)
        self.source = source

    def lookup(self, identity: Optional[str]) -> Optional[MappingEntry]:
        return self._entries.get(normalize_identity(identity))

    def target_for(self, identity: Optional[str]) -> Optional[str]:
        """Target identity for ``identity``, or ``None`` when unmapped or skipped."""
        entry = self.lookup(identity)
        if entry is None or entry.is_skip:
            return None
        return entry.target_identity

    def mapped_entries(self) -> List[MappingEntry]:
        return [e for e in self._entries.values() if not e.is_skip]

    def skipped_entries(self) -> List[MappingEntry]:
        return [e for e in self._entries.values() if e.is_skip]

    def __contains__(self, identity: object) -> bool:
        return isinstance(identity, str) and normalize_identity(identity) in self._entries

    def __iter__(self) -> Iterator[MappingEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


def _resolve_columns(path: str, fieldnames: Optional[List[str]]) -> Dict[str, str]:
    """Map canonical column names to the header names actually used in the file."""
    if not fieldnames:
        raise MappingFileFormatError(
            path, "mapping file is empty; expected header " + ",".join(MAPPING_COLUMNS)
        )
    by_lower = {(name or "").strip().lower(): name for name in fieldnames}
    columns: Dict[str, str] = {}
    for canonical in MAPPING_COLUMNS:
        actual = by_lower.get(canonical.lower())
        if actual is not None:
            columns[canonical] = actual
    for required in REQUIRED_COLUMNS:
        if required not in columns:
            raise MappingFileFormatError(
                path,
                f"missing required column '{required}'; add required column {required} to the header",
                column=required,
            )
    return columns


def load_mapping_table(path: str) -> MappingTable:
    """Load and normalize a mapping CSV.

    Args:
        path (str): Location of the mapping file.

    Returns:
        MappingTable: Entries keyed by lowercased ``SourceUser``; on duplicate
        source rows the last one wins.

    Raises:
        MappingFileFormatError: If the file is missing, empty, has no data rows
            or lacks ``SourceUser``/``TargetUser``.
    """
    if not os.path.isfile(path):
        raise MappingFileFormatError(path, "mapping file not found")

    entries: "OrderedDict[str, MappingEntry]" = OrderedDict()
    rows = 0
    with open(path, mode="r", encoding="utf-8-sig", newline="") as csvfile:
        reader = csv.DictReader(csvfile)
        columns = _resolve_columns(path, reader.fieldnames)

        def cell(row: Dict[str, Optional[str]], name: str) -> str:
            actual = columns.get(name)
            return ((row.get(actual) if actual else None) or "").strip()

        for row_num, row in enumerate(reader, start=2):  # header is row 1
            rows += 1
            source = cell(row, "SourceUser")
            if not source:
                continue
            target = cell(row, "TargetUser")
            entry = MappingEntry(
                source_identity=source,
                target_identity=target or None,
                source_display_name=cell(row, "SourceDisplayName") or source,
                target_display_name=cell(row, "TargetDisplayName") or target or source,
                notes=cell(row, "Notes") or source,
            )
            if entry.key in entries:
                log.warning("Row %d of %s overrides earlier mapping for %s", row_num, path, source)
            if entry.is_skip:
                log.info("Skipping %s (row %d): no TargetUser", source, row_num)
            entries[entry.key] = entry

    if rows == 0:
        raise MappingFileFormatError(path, "mapping file has a header but no rows")

    table = MappingTable(entries.values(), source=path)
    log.info(
        "Loaded %d mapping entries from %s (%d mapped, %d skipped)",
        len(table), path, len(table.mapped_entries()), len(table.skipped_entries()),
    )
    return table
