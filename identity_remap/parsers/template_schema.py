"""
Typed view over a PnP provisioning template.

A provisioning template is a loosely-typed XML document.  Rather than
searching arbitrary elements, the traversal here knows a small set of node
kinds (security blocks, site groups, list instances, data rows, files and
client-side pages) and exposes every user-bearing scalar as a
:class:`ScalarSlot`.  Passes over the document (extraction, rewrite,
inspection) subclass :class:`TemplateVisitor` and receive the slots in
document order.

Usage example::

    doc = load_template("template.xml")
    for slot in doc.iter_slots():
        print(slot.kind, slot.location, slot.value)
"""

from __future__ import annotations

import codecs
import logging
import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple
from xml.parsers import expat

from identity_remap.models.identity import ProvenanceKind
from identity_remap.utils.identity_tokens import substitute_identity_tokens

log = logging.getLogger(__name__)

PNP_NAMESPACE_PREFIX = "http://schemas.dev.office.com/PnP/"
ROOT_TAGS = {"Provisioning", "ProvisioningTemplate"}

# TemplateType values of document-library flavoured list instances.
LIBRARY_TEMPLATE_TYPES = {"101", "109", "115", "119", "700", "850", "851"}

# Security principal containers and the provenance they produce.
PRINCIPAL_CONTAINERS: Dict[str, ProvenanceKind] = {
    "AdditionalAdministrators": ProvenanceKind.ADMINISTRATOR,
    "AdditionalOwners": ProvenanceKind.OWNER,
    "AdditionalMembers": ProvenanceKind.MEMBER,
    "AdditionalVisitors": ProvenanceKind.VISITOR,
}

# File/page attributes that address package content and must stay untouched.
STRUCTURAL_FILE_ATTRIBUTES = {"Src", "Folder", "Overwrite", "Level", "PageName", "TargetFileName"}


def local_name(tag: object) -> str:
    """Tag name without its ``{namespace}`` part.  Comments and PIs yield ``""``."""
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def namespace_of(tag: object) -> str:
    if isinstance(tag, str) and tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return ""


def is_template_tag(tag: object) -> bool:
    return local_name(tag) in ROOT_TAGS and namespace_of(tag).startswith(PNP_NAMESPACE_PREFIX)


def children(element: ET.Element, name: str) -> List[ET.Element]:
    return [c for c in element if local_name(c.tag) == name]


def child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for c in element:
        if local_name(c.tag) == name:
            return c
    return None


def descendants(element: ET.Element, name: str) -> List[ET.Element]:
    return [e for e in element.iter() if local_name(e.tag) == name]


###############################################################################
# Scalar slots and visitor
###############################################################################

@dataclass
class ScalarSlot:
    """A single string value that may carry identity tokens.

    ``attribute`` names the XML attribute holding the value; ``None`` means
    the element text.
    """

    element: ET.Element
    attribute: Optional[str]
    kind: ProvenanceKind
    location: str

    @property
    def value(self) -> str:
        if self.attribute is None:
            return self.element.text or ""
        return self.element.get(self.attribute, "")

    @value.setter
    def value(self, new: str) -> None:
        if self.attribute is None:
            self.element.text = new
        else:
            self.element.set(self.attribute, new)


class TemplateVisitor:
    """Base class for passes over a template.

    :meth:`visit` dispatches on the slot kind to ``visit_<kind>`` (for
    example ``visit_group_member``) and falls back to :meth:`visit_scalar`.
    """

    def visit(self, slot: ScalarSlot) -> None:
        method = getattr(self, f"visit_{slot.kind.value}", None)
        if method is None:
            method = self.visit_scalar
        method(slot)

    def visit_scalar(self, slot: ScalarSlot) -> None:
        pass


###############################################################################
# Node kinds
###############################################################################

class SecurityNode:
    """A ``Security`` block at web, list, item or file scope."""

    def __init__(self, element: ET.Element, scope: str = "site") -> None:
        self.element = element
        self.scope = scope

    def _where(self, text: str) -> str:
        return text if self.scope == "site" else f"{self.scope} / {text}"

    def site_groups(self) -> List["SiteGroupNode"]:
        groups = child(self.element, "SiteGroups")
        return [SiteGroupNode(g) for g in children(groups, "SiteGroup")] if groups is not None else []

    def slots(self) -> Iterator[ScalarSlot]:
        for container, kind in PRINCIPAL_CONTAINERS.items():
            block = child(self.element, container)
            if block is None:
                continue
            for user in children(block, "User"):
                yield ScalarSlot(user, "Name", kind, self._where(kind.value))
        for group in self.site_groups():
            yield from group.slots()
        for assignment in descendants(self.element, "RoleAssignment"):
            role = assignment.get("RoleDefinition", "")
            yield ScalarSlot(assignment, "Principal", ProvenanceKind.ROLE_ASSIGNMENT, self._where(f"role assignment {role}".rstrip()))


class SiteGroupNode:
    def __init__(self, element: ET.Element) -> None:
        self.element = element

    @property
    def title(self) -> str:
        return self.element.get("Title", "")

    def slots(self) -> Iterator[ScalarSlot]:
        if self.element.get("Owner"):
            yield ScalarSlot(self.element, "Owner", ProvenanceKind.GROUP_OWNER, f"group owner of {self.title}")
        members = child(self.element, "Members")
        if members is not None:
            for user in children(members, "User"):
                yield ScalarSlot(user, "Name", ProvenanceKind.GROUP_MEMBER, f"group member of {self.title}")


class DataRowNode:
    def __init__(self, element: ET.Element, list_title: str, index: int) -> None:
        self.element = element
        self.list_title = list_title
        self.index = index

    def values(self) -> Dict[str, str]:
        return {v.get("FieldName", ""): v.text or "" for v in children(self.element, "DataValue")}

    def slots(self) -> Iterator[ScalarSlot]:
        for value in children(self.element, "DataValue"):
            field = value.get("FieldName", "")
            yield ScalarSlot(value, None, ProvenanceKind.FIELD_VALUE, f"list {self.list_title} / field {field}")
        security = child(self.element, "Security")
        if security is not None:
            yield from SecurityNode(security, f"list {self.list_title} / row {self.index}").slots()


class ListInstanceNode:
    def __init__(self, element: ET.Element) -> None:
        self.element = element

    @property
    def title(self) -> str:
        return self.element.get("Title", "")

    @property
    def url(self) -> str:
        return self.element.get("Url", "")

    @property
    def template_type(self) -> str:
        return self.element.get("TemplateType", "")

    @property
    def is_library(self) -> bool:
        return self.template_type in LIBRARY_TEMPLATE_TYPES

    def field_names(self) -> List[str]:
        fields = child(self.element, "Fields")
        if fields is None:
            return []
        return [f.get("Name") or f.get("DisplayName") or "" for f in fields if local_name(f.tag) == "Field"]

    def data_rows(self) -> List[DataRowNode]:
        rows = child(self.element, "DataRows")
        if rows is None:
            return []
        return [DataRowNode(r, self.title, i) for i, r in enumerate(children(rows, "DataRow"), start=1)]

    def slots(self) -> Iterator[ScalarSlot]:
        security = child(self.element, "Security")
        if security is not None:
            yield from SecurityNode(security, f"list {self.title}").slots()
        for row in self.data_rows():
            yield from row.slots()


class FileNode:
    def __init__(self, element: ET.Element) -> None:
        self.element = element

    @property
    def src(self) -> str:
        return self.element.get("Src", "")

    @property
    def folder(self) -> str:
        return self.element.get("Folder", "")

    @property
    def name(self) -> str:
        return self.element.get("TargetFileName") or os.path.basename(self.src.replace("\\", "/"))

    @property
    def path(self) -> str:
        folder = self.folder.rstrip("/")
        return f"{folder}/{self.name}" if folder else self.name

    def properties(self) -> Dict[str, str]:
        props = child(self.element, "Properties")
        if props is None:
            return {}
        return {p.get("Key", ""): p.get("Value", "") for p in children(props, "Property")}

    def slots(self) -> Iterator[ScalarSlot]:
        for attr in self.element.keys():
            if attr not in STRUCTURAL_FILE_ATTRIBUTES:
                yield ScalarSlot(self.element, attr, ProvenanceKind.FILE_METADATA, f"file {self.path} / attribute {attr}")
        props = child(self.element, "Properties")
        if props is not None:
            for prop in children(props, "Property"):
                key = prop.get("Key", "")
                yield ScalarSlot(prop, "Value", ProvenanceKind.FILE_PROPERTY, f"file {self.path} / property {key}")
        security = child(self.element, "Security")
        if security is not None:
            yield from SecurityNode(security, f"file {self.path}").slots()


class PageNode:
    """A ``ClientSidePage``.  Page attributes, header attributes and web part
    data are treated as file-level metadata."""

    def __init__(self, element: ET.Element) -> None:
        self.element = element

    @property
    def name(self) -> str:
        return self.element.get("PageName", "")

    @property
    def title(self) -> str:
        return self.element.get("Title") or os.path.splitext(self.name)[0]

    def slots(self) -> Iterator[ScalarSlot]:
        for attr in self.element.keys():
            if attr not in STRUCTURAL_FILE_ATTRIBUTES:
                yield ScalarSlot(self.element, attr, ProvenanceKind.FILE_METADATA, f"page {self.name} / attribute {attr}")
        header = child(self.element, "Header")
        if header is not None:
            for attr in header.keys():
                yield ScalarSlot(header, attr, ProvenanceKind.FILE_METADATA, f"page {self.name} / header {attr}")
        for control in descendants(self.element, "CanvasControl"):
            label = control.get("WebPartType") or control.get("ControlId") or "control"
            for attr in control.keys():
                if attr.startswith("Json"):
                    yield ScalarSlot(control, attr, ProvenanceKind.FILE_METADATA, f"page {self.name} / web part {label}")
        props = child(self.element, "Properties")
        if props is not None:
            for prop in children(props, "Property"):
                key = prop.get("Key", "")
                yield ScalarSlot(prop, "Value", ProvenanceKind.FILE_PROPERTY, f"page {self.name} / property {key}")
        security = child(self.element, "Security")
        if security is not None:
            yield from SecurityNode(security, f"page {self.name}").slots()


class TemplateNode:
    """One ``ProvisioningTemplate`` element."""

    def __init__(self, element: ET.Element) -> None:
        self.element = element

    @property
    def id(self) -> str:
        return self.element.get("ID", "")

    def security(self) -> Optional[SecurityNode]:
        security = child(self.element, "Security")
        return SecurityNode(security) if security is not None else None

    def lists(self) -> List[ListInstanceNode]:
        container = child(self.element, "Lists")
        return [ListInstanceNode(e) for e in children(container, "ListInstance")] if container is not None else []

    def files(self) -> List[FileNode]:
        container = child(self.element, "Files")
        return [FileNode(e) for e in children(container, "File")] if container is not None else []

    def pages(self) -> List[PageNode]:
        container = child(self.element, "ClientSidePages")
        return [PageNode(e) for e in children(container, "ClientSidePage")] if container is not None else []

    def content_types(self) -> List[ET.Element]:
        container = child(self.element, "ContentTypes")
        return children(container, "ContentType") if container is not None else []

    def site_fields(self) -> List[ET.Element]:
        container = child(self.element, "SiteFields")
        return [f for f in container if local_name(f.tag) == "Field"] if container is not None else []

    def slots(self) -> Iterator[ScalarSlot]:
        security = self.security()
        if security is not None:
            yield from security.slots()
        for lst in self.lists():
            yield from lst.slots()
        for f in self.files():
            yield from f.slots()
        for page in self.pages():
            yield from page.slots()


###############################################################################
# Document
###############################################################################

class TemplateDocument:
    """
    A parsed provisioning document and the bookkeeping needed to write it back.

    The element tree is only used to find the user-bearing slots.  Writing
    patches the original bytes: each recorded edit substitutes tokens inside
    one attribute value or text node, so the declaration, namespace prefixes,
    whitespace and comments come out exactly as they went in.
    """

    def __init__(self, tree: ET.ElementTree, source: bytes, *, name: str = "",
                 path: Optional[str] = None) -> None:
        self.tree = tree
        self.source = source
        self.name = name
        self.path = path
        self.modified = False
        self._edits: Dict[Tuple[int, Optional[str]], Tuple[ET.Element, Dict[str, str]]] = {}

    @property
    def root(self) -> ET.Element:
        return self.tree.getroot()

    def templates(self) -> List[TemplateNode]:
        if local_name(self.root.tag) == "ProvisioningTemplate":
            return [TemplateNode(self.root)]
        return [TemplateNode(e) for e in descendants(self.root, "ProvisioningTemplate")]

    def iter_slots(self) -> Iterator[ScalarSlot]:
        for template in self.templates():
            yield from template.slots()

    def walk(self, visitor: TemplateVisitor) -> TemplateVisitor:
        for slot in self.iter_slots():
            visitor.visit(slot)
        return visitor

    def mark_modified(self) -> None:
        if not self.modified:
            log.debug("Document %s marked modified", self.name or self.path)
        self.modified = True

    def record_edit(self, slot: ScalarSlot, replacements: Dict[str, str]) -> None:
        """Remember that the raw tokens in ``replacements`` must be swapped inside ``slot``."""
        key = (id(slot.element), slot.attribute)
        _element, known = self._edits.setdefault(key, (slot.element, {}))
        known.update(replacements)
        self.mark_modified()

    def to_bytes(self) -> bytes:
        if not self._edits:
            return self.source
        encoding = _declared_encoding(self.source)
        if "<".encode(encoding, errors="replace") != b"<":
            raise ValueError(f"{self.name or self.path}: cannot patch a {encoding} document in place")

        order = {id(e): i for i, e in enumerate(e for e in self.root.iter() if isinstance(e.tag, str))}
        offsets = _start_tag_offsets(self.source)
        spans: List[Tuple[int, int, Dict[str, str]]] = []
        for (element_id, attribute), (_element, replacements) in self._edits.items():
            tag = _START_TAG.match(self.source, offsets[order[element_id]])
            if tag is None:
                raise ValueError(f"{self.name or self.path}: unreadable start tag at byte {offsets[order[element_id]]}")
            if attribute is None:
                spans.extend((s, e, replacements) for s, e in _text_spans(self.source, tag))
            else:
                span = _attribute_span(self.source, tag, attribute)
                if span is not None:
                    spans.append((span[0], span[1], replacements))

        data = self.source
        for start, end, replacements in sorted(spans, key=lambda s: s[0], reverse=True):
            raw = data[start:end].decode(encoding)
            patched = substitute_identity_tokens(raw, lambda token: replacements.get(token.raw))
            data = data[:start] + patched.encode(encoding) + data[end:]
        return data

    def write(self, path: Optional[str] = None) -> str:
        target = path or self.path
        if not target:
            raise ValueError("TemplateDocument has no path to write to")
        data = self.to_bytes()
        with open(target, "wb") as f:
            f.write(data)
        return target


_START_TAG = re.compile(rb"""<[^\s/>]+(?:\s+[^\s=/>]+\s*=\s*(?:"[^"]*"|'[^']*'))*\s*/?>""")
_ENCODING_DECL = re.compile(rb"""^(?:\xef\xbb\xbf)?\s*<\?xml[^>]*?encoding\s*=\s*["']([A-Za-z0-9._-]+)["']""")
_ATTRIBUTE = re.compile(rb"""\s([^\s=/>]+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_CDATA_OPEN = b"<![CDATA["
_CDATA_CLOSE = b"]]>"
_WIDE_BOMS = (
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


def _declared_encoding(data: bytes) -> str:
    for bom, encoding in _WIDE_BOMS:
        if data.startswith(bom):
            return encoding
    match = _ENCODING_DECL.match(data)
    return match.group(1).decode("ascii") if match else "utf-8"


def _start_tag_offsets(data: bytes) -> List[int]:
    """Byte offset of every start tag, in document order."""
    offsets: List[int] = []
    parser = expat.ParserCreate()

    def start(_name, _attrs):
        offsets.append(parser.CurrentByteIndex)

    parser.StartElementHandler = start
    parser.Parse(data, True)
    return offsets


def _attribute_span(data: bytes, tag: "re.Match[bytes]", attribute: str) -> Optional[Tuple[int, int]]:
    """Byte range of the quoted value of ``attribute`` inside the start tag ``tag``."""
    qualified = attribute.startswith("{")
    wanted = local_name(attribute).encode("ascii")
    for match in _ATTRIBUTE.finditer(data, tag.start(), tag.end()):
        prefix, _, name = match.group(1).rpartition(b":")
        if name == wanted and bool(prefix) == qualified:
            group = 2 if match.group(2) is not None else 3
            return match.start(group), match.end(group)
    return None


def _text_spans(data: bytes, tag: "re.Match[bytes]") -> List[Tuple[int, int]]:
    """
    Byte ranges making up an element's leading text.

    ElementTree drops comments and processing instructions and joins the
    text around them, CDATA content included, so all of those pieces
    belong to the same slot.
    """
    if tag.group(0).endswith(b"/>"):
        return []
    spans = []
    pos = tag.end()
    while True:
        nxt = data.find(b"<", pos)
        if nxt == -1:
            nxt = len(data)
        if nxt > pos:
            spans.append((pos, nxt))
        if data.startswith(_CDATA_OPEN, nxt):
            body = nxt + len(_CDATA_OPEN)
            close = data.find(_CDATA_CLOSE, body)
            spans.append((body, close))
            pos = close + len(_CDATA_CLOSE)
        elif data.startswith(b"<!--", nxt):
            pos = data.find(b"-->", nxt) + 3
        elif data.startswith(b"<?", nxt):
            pos = data.find(b"?>", nxt) + 2
        else:
            return spans


def parse_template_bytes(data: bytes, *, name: str = "", path: Optional[str] = None) -> TemplateDocument:
    tree = ET.ElementTree(ET.fromstring(data))
    return TemplateDocument(tree, data, name=name, path=path)


def load_template(path: str, *, name: str = "") -> TemplateDocument:
    with open(path, "rb") as f:
        data = f.read()
    return parse_template_bytes(data, name=name or os.path.basename(path), path=path)


def read_root_tag(path: str) -> Optional[str]:
    """Tag of the first element of an XML file, or ``None`` if it is not XML."""
    with open(path, "rb") as f:
        try:
            for _event, element in ET.iterparse(f, events=("start",)):
                return element.tag
        except ET.ParseError:
            return None
    return None
