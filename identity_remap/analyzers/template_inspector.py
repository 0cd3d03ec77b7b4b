"""
Inspection and comparison of provisioning templates.

:func:`summarize` reads a parsed template (never modifying it) and returns a
:class:`DocumentSummary` with one record per list, library, page, file,
user, content type and site field.  :func:`diff` compares two summaries kind
by kind on a key property using exact string comparison, since titles are
case-sensitive in SharePoint.

Usage example::

    a = summarize_archive("before.pnp")
    b = summarize_archive("after.pnp")
    result = diff(a, b)
    print(result["lists"].only_in_a)
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from identity_remap.extractors.identity_extractor import extract_from_document
from identity_remap.models.summary import ENTITY_KEYS, DiffResult, DocumentSummary, EntityDiff
from identity_remap.parsers.pnp_archive import open_document
from identity_remap.parsers.template_schema import ListInstanceNode, TemplateDocument, load_template

log = logging.getLogger(__name__)


def _list_record(node: ListInstanceNode) -> Dict[str, Any]:
    return {
        "title": node.title,
        "url": node.url,
        "template_type": node.template_type,
        "fields": node.field_names(),
        "item_count": len(node.data_rows()),
    }


def summarize(document: TemplateDocument, include_users: bool = True, include_content: bool = True,
              detailed: bool = False, *, include_system_accounts: bool = False,
              system_patterns: Optional[Sequence[str]] = None) -> DocumentSummary:
    """Build a summary of ``document``.

    Lists and libraries are always reported.  Pages and files are reported
    when ``include_content`` is set, users when ``include_users`` is set and
    content types and site fields only when ``detailed`` is set.
    """
    summary = DocumentSummary(source=document.name)
    for template in document.templates():
        if template.id:
            summary.template_ids.append(template.id)
        for node in template.lists():
            target = summary.libraries if node.is_library else summary.lists
            target.append(_list_record(node))
        if include_content:
            for page in template.pages():
                summary.pages.append({"title": page.title, "name": page.name})
            for f in template.files():
                summary.files.append({"name": f.name, "path": f.path, "folder": f.folder,
                                      "properties": len(f.properties())})
        if detailed:
            for ct in template.content_types():
                summary.content_types.append({"name": ct.get("Name", ""), "id": ct.get("ID", ""),
                                              "group": ct.get("Group", "")})
            for field in template.site_fields():
                summary.site_fields.append({"name": field.get("Name", ""), "display_name": field.get("DisplayName", ""),
                                            "type": field.get("Type", ""), "group": field.get("Group", "")})

    if include_users:
        found = extract_from_document(document, include_system_accounts=include_system_accounts,
                                      system_patterns=system_patterns)
        for item in found:
            summary.users.append({"email": item.identity, "display_name": item.reference.display_name,
                                  "provenance": str(item.provenance)})

    log.info("Summary of %s: %s", document.name or "template", summary.counts)
    return summary


def _diff_kind(a: DocumentSummary, b: DocumentSummary, kind: str, key_property: str) -> EntityDiff:
    keys_a = set(a.keys(kind, key_property))
    keys_b = set(b.keys(kind, key_property))
    return EntityDiff(
        key_property=key_property,
        only_in_a=sorted(keys_a - keys_b),
        only_in_b=sorted(keys_b - keys_a),
        in_both=sorted(keys_a & keys_b),
    )


def diff(a: DocumentSummary, b: DocumentSummary, key_property: Optional[str] = None,
         kinds: Optional[Iterable[str]] = None) -> DiffResult:
    """
    Compare two summaries.

    :param key_property: Key used for every kind; defaults to the natural key
        of each kind (``title`` for lists and pages, ``email`` for users,
        ``name`` otherwise).
    :param kinds: Restrict the comparison to these entity kinds.
    """
    result: Dict[str, EntityDiff] = {}
    for kind in kinds or ENTITY_KEYS:
        if kind not in ENTITY_KEYS:
            raise ValueError(f"Unknown entity kind '{kind}'. Use one of: {', '.join(ENTITY_KEYS)}")
        result[kind] = _diff_kind(a, b, kind, key_property or ENTITY_KEYS[kind])
    return DiffResult(source_a=a.source, source_b=b.source, kinds=result)


def load_source(path: str) -> TemplateDocument:
    """Open a ``.pnp`` package or a bare template ``.xml`` file."""
    if path.lower().endswith(".xml"):
        return load_template(path)
    doc = open_document(path)
    doc.name = os.path.basename(path)
    return doc


def summarize_archive(path: str, include_users: bool = True, include_content: bool = True,
                      detailed: bool = False, **kwargs: Any) -> DocumentSummary:
    return summarize(load_source(path), include_users, include_content, detailed, **kwargs)


def compare_archives(path_a: str, path_b: str, key_property: Optional[str] = None, *,
                     detailed: bool = False, **kwargs: Any) -> DiffResult:
    a = summarize_archive(path_a, detailed=detailed, **kwargs)
    b = summarize_archive(path_b, detailed=detailed, **kwargs)
    result = diff(a, b, key_property)
    log.info("Compared %s with %s: %s", path_a, path_b, "identical" if result.is_identical else "different")
    return result


def diff_frame(result: DiffResult) -> pd.DataFrame:
    """One row per compared key: ``kind``, ``key``, ``side``."""
    rows: List[Dict[str, str]] = []
    for kind, entity in result.kinds.items():
        for side in ("only_in_a", "only_in_b", "in_both"):
            for key in getattr(entity, side):
                rows.append({"kind": kind, "key_property": entity.key_property, "key": key, "side": side})
    return pd.DataFrame(rows, columns=["kind", "key_property", "key", "side"])


def write_diff_report(result: DiffResult, out_path: str) -> str:
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    diff_frame(result).to_csv(out_path, index=False)
    return out_path
