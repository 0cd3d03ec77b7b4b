"""
Table-driven rewrite of user identities inside a provisioning package.

The rewrite walks the same locations the extractor reads (site security,
site groups, list data rows, file and page metadata) and replaces every
identity token that the mapping table maps to a target.  Only the token's
characters change; claims prefixes and surrounding text are kept.  Skip
entries and unknown identities are left exactly as they were.

Usage example::

    from identity_remap.utils.mapping_table import load_mapping_table
    from identity_remap.migrators.identity_rewriter import rewrite_archive

    table = load_mapping_table("user_mapping.csv")
    result = rewrite_archive("site.pnp", table)
    print(result.output_path, result.total_substitutions)

The source package is never modified: the rewritten template goes to a
scratch copy which is repackaged as ``<name>-migrated.pnp``.
"""

from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from identity_remap.parsers.pnp_archive import PnPArchive
from identity_remap.parsers.template_schema import ScalarSlot, TemplateDocument, TemplateVisitor
from identity_remap.utils.errors import ManifestNotFoundError, RewriteIOError
from identity_remap.utils.identity_tokens import IdentityToken, substitute_identity_tokens

log = logging.getLogger(__name__)

OUTPUT_SUFFIX = "-migrated"


@dataclass
class RewriteResult:
    source_path: str
    output_path: str
    substitutions: Dict[str, int] = field(default_factory=dict)
    modified_documents: List[str] = field(default_factory=list)

    @property
    def total_substitutions(self) -> int:
        return sum(self.substitutions.values())

    def to_dict(self) -> Dict[str, object]:
        return {
            "source_path": self.source_path,
            "output_path": self.output_path,
            "substitutions": dict(self.substitutions),
            "modified_documents": list(self.modified_documents),
            "total_substitutions": self.total_substitutions,
        }


class IdentityRewriter(TemplateVisitor):
    """Visitor replacing mapped identity tokens in every scalar slot."""

    def __init__(self, table, document: TemplateDocument) -> None:
        self.table = table
        self.document = document
        self.counts: Counter = Counter()

    def visit_scalar(self, slot: ScalarSlot) -> None:
        replaced: Dict[str, str] = {}

        def _replace(token: IdentityToken) -> Optional[str]:
            target = self.table.target_for(token.raw)
            if target is None or target == token.raw:
                return None
            self.counts[token.identity] += 1
            replaced[token.raw] = target
            return target

        old = slot.value
        new = substitute_identity_tokens(old, _replace)
        if replaced:
            log.info("REWRITE %s: %s -> %s", slot.location, old, new)
            slot.value = new
            self.document.record_edit(slot, replaced)


def rewrite_document(document: TemplateDocument, table) -> Dict[str, int]:
    """Rewrite ``document`` in memory; return substitution counts per source identity."""
    rewriter = document.walk(IdentityRewriter(table, document))
    return dict(rewriter.counts)


def derive_output_path(archive_path: str, suffix: str = OUTPUT_SUFFIX) -> str:
    root, ext = os.path.splitext(archive_path)
    return f"{root}{suffix}{ext or '.pnp'}"


def rewrite_archive(archive_path: str, table, output_path: Optional[str] = None, *,
                    suffix: str = OUTPUT_SUFFIX) -> RewriteResult:
    """
    Write a copy of ``archive_path`` with identities substituted.

    :param archive_path: The source ``.pnp`` package.  It is only read.
    :param table: A loaded mapping table.
    :param output_path: Destination package; derived from ``archive_path``
        and ``suffix`` when omitted.  An existing file is replaced.
    :param suffix: Suffix inserted before the extension of derived paths.
    :return: A :class:`RewriteResult` with per-identity substitution counts.
    :raises ArchiveFormatError: if the source is not a readable package.
    :raises ManifestNotFoundError: if the package holds no template.
    :raises RewriteIOError: if the new package cannot be written.
    """
    out = output_path or derive_output_path(archive_path, suffix)
    counts: Counter = Counter()
    modified: List[str] = []

    with PnPArchive(archive_path) as archive:
        documents = list(archive.documents())
        if not documents:
            raise ManifestNotFoundError(archive_path, archive.xml_members())
        for doc in documents:
            counts.update(rewrite_document(doc, table))
            if doc.modified:
                try:
                    doc.write()
                except (OSError, ValueError) as e:
                    raise RewriteIOError(doc.name, str(e)) from e
                modified.append(doc.name)
            else:
                log.debug("No identities rewritten in %s; passing through", doc.name)
        archive.serialize(out)

    log.info("Rewrote %d reference(s) in %d document(s) -> %s", sum(counts.values()), len(modified), out)
    return RewriteResult(source_path=archive_path, output_path=out, substitutions=dict(counts),
                         modified_documents=modified)
