"""
Error taxonomy and structured event reports for identity remapping.

The :mod:`identity_remap.utils.errors` module centralizes two things:

* the exception hierarchy raised by the archive accessor, the mapping
  loader, the validation gate and the rewrite engine;
* the writing of report entries for failed and successful steps.  Each
  entry is appended to a JSON Lines file under ``reports/migration`` so
  that a run can be reviewed or parsed afterwards.

Two public report functions are provided:

``report_error``
    Record an error that occurred for a subject (a mapping entry, an
    archive, an identity).  An optional exception can be supplied and will
    be serialized to the log.

``report_ok``
    Record a successful step.  Additional key/value information can be
    attached to the entry via the ``extra`` parameter.

The ``EVENTS`` dictionary maps event codes to human readable messages.
Codes not present in the dictionary fall back to the code itself.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


class IdentityRemapError(Exception):
    """Base class for every error raised by this package."""


class ArchiveFormatError(IdentityRemapError):
    """The package is missing, unreadable or not a ZIP container."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: not a valid provisioning package ({reason})")


class ManifestNotFoundError(IdentityRemapError):
    """No contained XML part has a recognized provisioning root element."""

    def __init__(self, path: str, scanned: Optional[List[str]] = None) -> None:
        self.path = path
        self.scanned = list(scanned or [])
        super().__init__(
            f"{path}: no provisioning template found among {len(self.scanned)} XML part(s); "
            "export the site again with a provisioning template inside the package"
        )


class MappingFileFormatError(IdentityRemapError):
    """The mapping CSV is empty or misses a mandatory column."""

    def __init__(self, path: str, reason: str, column: Optional[str] = None) -> None:
        self.path = path
        self.column = column
        super().__init__(f"{path}: {reason}")


class IdentityValidationError(IdentityRemapError):
    """One or more target identities could not be confirmed.

    Carries the complete list of invalid outcomes so the caller sees every
    failing entry at once.
    """

    def __init__(self, invalid: List[Any]) -> None:
        self.invalid = list(invalid)
        names = ", ".join(o.entry.target_identity for o in self.invalid)
        super().__init__(
            f"{len(self.invalid)} target identit{'y' if len(self.invalid) == 1 else 'ies'} "
            f"failed validation: {names}; fix the mapping file or rerun with --allow-invalid"
        )


class RewriteIOError(IdentityRemapError):
    """Repackaging the rewritten archive failed."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"{path}: could not write rewritten package ({reason})")


class DirectoryError(IdentityRemapError):
    """The directory collaborator refused or failed an operation."""


# Mapping of event codes used throughout a run to descriptive messages.
# The keys include both error and success codes as the same lookup is used by
# :func:`report_error` and :func:`report_ok`.
EVENTS: Dict[str, str] = {
    "MAPPING_SKIPPED": "Mapping entry has no target and will not be rewritten",
    "TARGET_VALID": "Target identity confirmed in destination directory",
    "TARGET_INVALID": "Target identity could not be confirmed",
    "IDENTITY_REWRITTEN": "Identity references rewritten",
    "ARCHIVE_WRITTEN": "Rewritten package written",
    "TEMPLATE_WRITTEN": "Mapping template written",
    "ARCHIVE_ERROR": "Provisioning package could not be processed",
}

_REPORT_DIR = os.path.join("reports", "migration")


def _write_jsonl(path: str, data: Dict[str, Any]) -> None:
    """Append ``data`` as a JSON object followed by a newline to ``path``."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)
        f.write("\n")


def _subject_fields(subject: Any) -> Dict[str, Any]:
    if isinstance(subject, dict):
        return dict(subject)
    if hasattr(subject, "model_dump"):
        return subject.model_dump(mode="json")
    return {"subject": str(subject)}


def report_error(code: str, subject: Any, exc: Optional[Exception] = None, *, report_dir: str = _REPORT_DIR) -> None:
    """Log an error event for ``subject``.

    Parameters
    ----------
    code:
        A key identifying the type of error.  If ``code`` is present in
        :data:`EVENTS` its value will be used as the message.
    subject:
        The mapping entry, identity or archive path the error refers to.
        Pydantic models are dumped, dictionaries are copied and anything
        else is stringified.
    exc:
        Optional exception instance that triggered the error.  The string
        representation of the exception will be included in the log entry.
    report_dir:
        Directory receiving ``errors.jsonl``.
    """
    message = EVENTS.get(code, code)
    entry: Dict[str, Any] = {"code": code, "message": message}
    entry.update(_subject_fields(subject))
    if exc is not None:
        entry["error"] = str(exc)
    log.error("%s - %s", message, entry.get("error", ""))
    _write_jsonl(os.path.join(report_dir, "errors.jsonl"), entry)


def report_ok(code: str, subject: Any, extra: Optional[Dict[str, Any]] = None, *, report_dir: str = _REPORT_DIR) -> None:
    """Log a successful event for ``subject``.

    Parameters
    ----------
    code:
        A key identifying the type of event.
    subject:
        The mapping entry, identity or archive path the event refers to.
    extra:
        Optional dictionary of additional fields to merge into the log entry.
    report_dir:
        Directory receiving ``success.jsonl``.
    """
    message = EVENTS.get(code, code)
    entry: Dict[str, Any] = {"code": code, "message": message}
    entry.update(_subject_fields(subject))
    if extra:
        entry.update(extra)
    log.info("%s", message)
    _write_jsonl(os.path.join(report_dir, "success.jsonl"), entry)
