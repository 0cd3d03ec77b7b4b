from __future__ import annotations

import logging
from typing import List, Optional

from identity_remap.models.identity import (
    Found,
    MappingEntry,
    NotFound,
    ValidationOutcome,
    ValidationReport,
    ValidationStatus,
)
from identity_remap.utils.errors import IdentityValidationError

log = logging.getLogger(__name__)


def _check_entry(entry: MappingEntry, directory, ensure_missing: bool) -> ValidationOutcome:
    target = entry.target_identity or ""
    try:
        result = directory.find_user(target)
    except Exception as e:  # lookup failure, reason kept verbatim
        return ValidationOutcome(entry=entry, status=ValidationStatus.INVALID, reason=str(e))
    if isinstance(result, Found):
        return ValidationOutcome(entry=entry, status=ValidationStatus.VALID, reason="found in destination site")

    not_found_reason = result.reason if isinstance(result, NotFound) else "not found"
    if not ensure_missing:
        return ValidationOutcome(entry=entry, status=ValidationStatus.INVALID, reason=not_found_reason)

    try:
        directory.ensure_user(target)
    except Exception as e:  # any collaborator failure, reason kept verbatim
        return ValidationOutcome(entry=entry, status=ValidationStatus.INVALID, reason=str(e))
    return ValidationOutcome(entry=entry, status=ValidationStatus.VALID, reason="added to destination site")


def validate_mapping(table, directory, *, ensure_missing: bool = True) -> ValidationReport:
    """
    Confirm that every mapped target identity exists in the destination.

    For each non-skip entry the directory is asked for the user; a missing
    user is then ensured (added to the site when the tenant knows it) unless
    ``ensure_missing`` is false.  All entries are checked before the report
    is returned, so the caller sees every failure at once.

    Args:
        table: The loaded :class:`~identity_remap.utils.mapping_table.MappingTable`.
        directory: Collaborator providing ``find_user`` and ``ensure_user``.
        ensure_missing: Allow the side-effecting ensure step.

    Returns:
        ValidationReport: One outcome per mapped entry.
    """
    outcomes: List[ValidationOutcome] = []
    for entry in table.mapped_entries():
        outcome = _check_entry(entry, directory, ensure_missing)
        if outcome.is_valid:
            log.info("Target %s for %s: %s", entry.target_identity, entry.source_identity, outcome.reason)
        else:
            log.warning("Target %s for %s is invalid: %s", entry.target_identity, entry.source_identity, outcome.reason)
        outcomes.append(outcome)

    report = ValidationReport(outcomes=outcomes)
    log.info("Validation finished: %d valid, %d invalid", report.valid_count, report.invalid_count)
    return report


def require_valid(report: ValidationReport, *, allow_invalid: bool = False) -> Optional[IdentityValidationError]:
    """
    Gate a rewrite on a validation report.

    Raises :class:`IdentityValidationError` carrying every invalid outcome
    unless ``allow_invalid`` is set, in which case the error is returned
    (not raised) so the caller can still report it.
    """
    if report.is_valid:
        return None
    error = IdentityValidationError(report.invalid_outcomes)
    if not allow_invalid:
        raise error
    log.warning("Proceeding despite %d invalid target(s)", report.invalid_count)
    return error
