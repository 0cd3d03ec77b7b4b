"""
Extraction of user identities from provisioning templates and live sites.

Both sources produce the same shape: a tuple of :class:`ExtractedIdentity`
sorted by normalized identity, where each identity appears once with the
provenance of its first sighting.  System accounts are filtered after the
walk so callers still have the complete picture if they disable the filter.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from identity_remap.models.identity import ExtractedIdentity, Provenance, ProvenanceKind, UserReference
from identity_remap.parsers.template_schema import ScalarSlot, TemplateDocument, TemplateVisitor
from identity_remap.utils.identity_tokens import compile_system_patterns, extract_identity_tokens, is_system_account

log = logging.getLogger(__name__)

ItemValue = Tuple[str, str, str]  # (list title, field name, raw value)


class _FirstSighting:
    """Ordered first-wins accumulator, local to one extraction call."""

    def __init__(self) -> None:
        self._seen: Dict[str, ExtractedIdentity] = {}

    def add(self, raw: str, display_name: str, kind: ProvenanceKind, location: str) -> None:
        for token in extract_identity_tokens(raw):
            if token.identity in self._seen:
                continue
            ref = UserReference(identity=token.identity, raw=token.raw, display_name=display_name or token.raw)
            self._seen[token.identity] = ExtractedIdentity(reference=ref, provenance=Provenance(kind=kind, location=location))

    def result(self) -> Tuple[ExtractedIdentity, ...]:
        return tuple(self._seen[k] for k in sorted(self._seen))


class IdentityCollector(TemplateVisitor):
    def __init__(self) -> None:
        self.found = _FirstSighting()

    def visit_scalar(self, slot: ScalarSlot) -> None:
        self.found.add(slot.value, "", slot.kind, slot.location)


def filter_system_accounts(identities: Iterable[ExtractedIdentity],
                           patterns: Optional[Sequence[str]] = None) -> Tuple[ExtractedIdentity, ...]:
    compiled = compile_system_patterns(patterns)
    kept: List[ExtractedIdentity] = []
    for item in identities:
        if is_system_account(item.identity, item.reference.display_name, compiled):
            log.debug("Dropping system account %s (%s)", item.identity, item.provenance)
            continue
        kept.append(item)
    return tuple(kept)


def extract_from_document(document: TemplateDocument, *, include_system_accounts: bool = False,
                          system_patterns: Optional[Sequence[str]] = None) -> Tuple[ExtractedIdentity, ...]:
    """Collect the identities referenced by a parsed template.

    Visits site security principals and role assignments, site group owners
    and members, list data row values, and file/page properties and
    metadata.

    Args:
        document: The parsed provisioning document.
        include_system_accounts: Keep service principals in the output.
        system_patterns: Regexes overriding the default system-account list.

    Returns:
        tuple: Identities sorted by normalized identity.
    """
    collector = document.walk(IdentityCollector())
    found = collector.found.result()
    log.info("Found %d distinct identities in %s", len(found), document.name or "template")
    if include_system_accounts:
        return found
    return filter_system_accounts(found, system_patterns)


def extract_from_directory(directory, *, groups: Iterable[str] = (), item_values: Iterable[ItemValue] = (),
                           include_system_accounts: bool = False,
                           system_patterns: Optional[Sequence[str]] = None) -> Tuple[ExtractedIdentity, ...]:
    """Collect identities from a live site through a directory collaborator.

    Args:
        directory: Object providing ``list_users()`` and
            ``list_group_members(name)``.
        groups: Group names whose membership is enumerated.
        item_values: ``(list title, field name, value)`` triples of list items.
        include_system_accounts: Keep service principals in the output.
        system_patterns: Regexes overriding the default system-account list.

    Returns:
        tuple: Identities sorted by normalized identity.
    """
    found = _FirstSighting()
    for user in directory.list_users():
        found.add(user.email or user.login_name, user.title, ProvenanceKind.SITE_USER, "site user")
    for group in groups:
        for user in directory.list_group_members(group):
            found.add(user.email or user.login_name, user.title, ProvenanceKind.GROUP_MEMBER, f"group member of {group}")
    for list_title, field_name, value in item_values:
        found.add(value, "", ProvenanceKind.FIELD_VALUE, f"list {list_title} / field {field_name}")

    result = found.result()
    log.info("Found %d distinct identities in the live site", len(result))
    if include_system_accounts:
        return result
    return filter_system_accounts(result, system_patterns)
