"""
Parsers for provisioning packages and the templates inside them.

* :mod:`identity_remap.parsers.pnp_archive` – open, scan and repackage ``.pnp`` files
* :mod:`identity_remap.parsers.template_schema` – typed nodes and visitor over the template XML
"""

from .pnp_archive import PnPArchive, open_document, serialize
from .template_schema import ScalarSlot, TemplateDocument, TemplateVisitor, load_template

__all__ = [
    "PnPArchive",
    "open_document",
    "serialize",
    "ScalarSlot",
    "TemplateDocument",
    "TemplateVisitor",
    "load_template",
]
