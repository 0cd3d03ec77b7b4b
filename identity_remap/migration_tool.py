"""
High-level orchestration of the cross-domain identity remapping.

This module defines an :class:`IdentityMigrationTool` class that ties
together the extractors, parsers, migrators, analyzers and utilities into a
complete pipeline: extract the identities of a provisioning package (or a
live site), write a mapping template for a human to edit, validate the
edited mapping against the destination site, rewrite the package and
inspect or compare packages at any point.

Configuration is supplied via a JSON file path or directly as a
dictionary.  The ``directory`` section holds ``site_url`` and
``access_token`` for the destination site; the ``migration`` section holds
the rewrite and extraction options.  Every step is recorded with
:func:`~identity_remap.utils.errors.report_ok` /
:func:`~identity_remap.utils.errors.report_error`.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from identity_remap.analyzers.template_inspector import compare_archives, summarize_archive
from identity_remap.extractors.identity_extractor import extract_from_directory, extract_from_document
from identity_remap.migrators.identity_rewriter import OUTPUT_SUFFIX, RewriteResult, rewrite_archive
from identity_remap.migrators.sharepoint_directory import SharePointDirectory
from identity_remap.models.identity import ExtractedIdentity, ValidationReport
from identity_remap.models.summary import DiffResult, DocumentSummary
from identity_remap.parsers.pnp_archive import open_document
from identity_remap.parsers.template_schema import load_template
from identity_remap.utils.errors import (
    ArchiveFormatError,
    ManifestNotFoundError,
    RewriteIOError,
    report_error,
    report_ok,
)
from identity_remap.utils.identity_tokens import SYSTEM_ACCOUNT_PATTERNS
from identity_remap.utils.mapping_table import MappingTable, load_mapping_table
from identity_remap.utils.mapping_template import generate_mapping_template
from identity_remap.utils.pre_flight_checks import require_valid, validate_mapping

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(log_dir: str = os.path.join("reports", "migration"), level: str = "INFO",
                      quiet: bool = False) -> None:
    """Install a console handler and a ``migration.log`` file handler on the root logger."""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    if not quiet:
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    os.makedirs(log_dir, exist_ok=True)
    fh = logging.FileHandler(os.path.join(log_dir, "migration.log"), encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)


class IdentityMigrationTool:
    """
    Encapsulates the state and behavior required to remap the identities of
    a provisioning package.  This class reads configuration, creates the
    directory collaborator on first use and runs each pipeline step.
    Detailed success and failure information is recorded using the
    :mod:`identity_remap.utils.errors` module.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, *, config_file: Optional[str] = None,
                 directory: Any = None) -> None:
        if config_file and os.path.exists(config_file):
            with open(config_file, "r", encoding="utf-8") as f:
                config = json.load(f)
        elif config is None:
            config = {}

        config.setdefault("directory", {})
        config["directory"].setdefault("site_url", os.getenv("REMAP_SITE_URL", ""))
        config["directory"].setdefault("access_token", os.getenv("REMAP_ACCESS_TOKEN", ""))
        config["directory"].setdefault("requests_per_minute", 300)

        config.setdefault("migration", {})
        config["migration"].setdefault("include_system_accounts", False)
        config["migration"].setdefault("allow_invalid", False)
        config["migration"].setdefault("ensure_missing_users", True)
        config["migration"].setdefault("output_suffix", OUTPUT_SUFFIX)
        config["migration"].setdefault("system_account_patterns", list(SYSTEM_ACCOUNT_PATTERNS))
        config["migration"].setdefault("reports_dir", os.path.join("reports", "migration"))

        self.config = config
        self.reports_dir: str = config["migration"]["reports_dir"]
        self._directory = directory

    def log_message(self, message: str, level: str = "INFO") -> None:
        log.log(getattr(logging, level.upper(), logging.INFO), message)

    @property
    def directory(self):
        if self._directory is None:
            self._directory = SharePointDirectory(self.config["directory"])
        return self._directory

    def _extract_options(self) -> Dict[str, Any]:
        opts = self.config["migration"]
        return {
            "include_system_accounts": bool(opts["include_system_accounts"]),
            "system_patterns": opts["system_account_patterns"],
        }

    # -- extraction -----------------------------------------------------

    def extract_identities(self, source_path: str) -> Tuple[ExtractedIdentity, ...]:
        """Identities referenced by a ``.pnp`` package or a template ``.xml`` file."""
        self.log_message(f"Extracting identities from {source_path}")
        try:
            doc = load_template(source_path) if source_path.lower().endswith(".xml") else open_document(source_path)
        except (ArchiveFormatError, ManifestNotFoundError) as e:
            report_error("ARCHIVE_ERROR", {"path": source_path}, e, report_dir=self.reports_dir)
            raise
        return extract_from_document(doc, **self._extract_options())

    def extract_live_identities(self, groups: Optional[Iterable[str]] = None,
                                lists: Sequence[str] = ()) -> Tuple[ExtractedIdentity, ...]:
        """Identities of the destination site: site users, group members and list item values."""
        directory = self.directory
        if groups is None:
            groups = directory.list_groups() if hasattr(directory, "list_groups") else []
        groups = list(groups)
        self.log_message(f"Extracting identities from live site ({len(groups)} group(s), {len(lists)} list(s))")

        def item_values():
            for title in lists:
                yield from directory.iter_item_values(title)

        return extract_from_directory(directory, groups=groups, item_values=item_values(), **self._extract_options())

    def write_mapping_template(self, identities: Iterable[ExtractedIdentity],
                               out_path: str = os.path.join("reports", "user_mapping.csv")) -> str:
        identities = list(identities)
        path = generate_mapping_template(identities, out_path)
        self.log_message(f"Wrote mapping template with {len(identities)} identities to {path}")
        report_ok("TEMPLATE_WRITTEN", {"path": path}, {"identities": len(identities)}, report_dir=self.reports_dir)
        return path

    # -- validation -----------------------------------------------------

    def load_mapping(self, mapping_path: str) -> MappingTable:
        table = load_mapping_table(mapping_path)
        for entry in table.skipped_entries():
            report_ok("MAPPING_SKIPPED", entry, report_dir=self.reports_dir)
        self.log_message(
            f"Loaded {len(table)} mapping entries from {mapping_path} "
            f"({len(table.mapped_entries())} mapped, {len(table.skipped_entries())} skipped)"
        )
        return table

    def validate(self, table: MappingTable, *, ensure_missing: Optional[bool] = None) -> ValidationReport:
        if ensure_missing is None:
            ensure_missing = bool(self.config["migration"]["ensure_missing_users"])
        report = validate_mapping(table, self.directory, ensure_missing=ensure_missing)
        for outcome in report.outcomes:
            if outcome.is_valid:
                report_ok("TARGET_VALID", outcome.entry, {"reason": outcome.reason}, report_dir=self.reports_dir)
            else:
                report_error("TARGET_INVALID", outcome.entry, Exception(outcome.reason), report_dir=self.reports_dir)
        return report

    # -- rewrite --------------------------------------------------------

    def rewrite(self, archive_path: str, mapping_path: str, output_path: Optional[str] = None, *,
                skip_validation: bool = False, allow_invalid: Optional[bool] = None) -> RewriteResult:
        """
        Validate the mapping and write a rewritten copy of ``archive_path``.

        The mapping file is loaded before any directory call, so a
        malformed file aborts the run without touching the network.  The
        rewrite is refused when validation reports invalid targets unless
        ``allow_invalid`` (or ``migration.allow_invalid``) is set.

        :raises MappingFileFormatError: if the mapping file is malformed.
        :raises IdentityValidationError: if targets are invalid and not allowed.
        :raises ArchiveFormatError, ManifestNotFoundError, RewriteIOError: on package errors.
        """
        if allow_invalid is None:
            allow_invalid = bool(self.config["migration"]["allow_invalid"])
        table = self.load_mapping(mapping_path)

        if skip_validation:
            self.log_message("Skipping target validation as requested", level="WARNING")
        else:
            report = self.validate(table)
            require_valid(report, allow_invalid=allow_invalid)

        try:
            result = rewrite_archive(archive_path, table, output_path,
                                     suffix=self.config["migration"]["output_suffix"])
        except (ArchiveFormatError, ManifestNotFoundError, RewriteIOError) as e:
            report_error("ARCHIVE_ERROR", {"path": archive_path}, e, report_dir=self.reports_dir)
            raise

        for identity, count in sorted(result.substitutions.items()):
            report_ok("IDENTITY_REWRITTEN", {"identity": identity, "target": table.target_for(identity)},
                      {"count": count}, report_dir=self.reports_dir)
        report_ok("ARCHIVE_WRITTEN", {"path": result.output_path}, result.to_dict(), report_dir=self.reports_dir)
        self.log_message(f"Rewrote {result.total_substitutions} reference(s); new package at {result.output_path}")
        return result

    # -- inspection -----------------------------------------------------

    def inspect(self, source_path: str, *, include_users: bool = True, include_content: bool = True,
                detailed: bool = False) -> DocumentSummary:
        return summarize_archive(source_path, include_users, include_content, detailed, **self._extract_options())

    def compare(self, path_a: str, path_b: str, key_property: Optional[str] = None, *,
                detailed: bool = False) -> DiffResult:
        return compare_archives(path_a, path_b, key_property, detailed=detailed, **self._extract_options())

    def summary_lines(self, summary: DocumentSummary) -> List[str]:
        lines = [f"Template: {summary.source} ({', '.join(summary.template_ids) or 'no id'})"]
        for kind, count in summary.counts.items():
            lines.append(f"  {kind}: {count}")
        return lines
