"""
Access to PnP provisioning packages (``.pnp``).

A package is a ZIP container holding one XML provisioning template plus
auxiliary parts (page sources, images, ``[Content_Types].xml``).  The
:class:`PnPArchive` context manager extracts the package into a private
scratch directory, locates the template by its root element and removes the
scratch directory when the ``with`` block is left, whatever the outcome::

    with PnPArchive("site.pnp") as archive:
        doc = archive.manifest()
        ...
        archive.serialize("site-migrated.pnp")

The source package is only ever read.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import zipfile
from typing import Dict, Iterator, List, Optional, Sequence

from identity_remap.parsers.template_schema import TemplateDocument, is_template_tag, load_template, read_root_tag
from identity_remap.utils.errors import ArchiveFormatError, ManifestNotFoundError, RewriteIOError

log = logging.getLogger(__name__)

_DEFAULT_DATE = (1980, 1, 1, 0, 0, 0)


class PnPArchive:
    def __init__(self, path: str) -> None:
        self.path = path
        self.scratch_dir: Optional[str] = None
        self._infos: List[zipfile.ZipInfo] = []

    def __enter__(self) -> "PnPArchive":
        self.extract()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def extract(self) -> str:
        """Unpack the package into a fresh scratch directory and return its path."""
        if not os.path.isfile(self.path):
            raise ArchiveFormatError(self.path, "file not found")
        if not zipfile.is_zipfile(self.path):
            raise ArchiveFormatError(self.path, "not a ZIP package")

        self.scratch_dir = tempfile.mkdtemp(prefix="pnp-remap-")
        log.debug("Extracting %s into %s", self.path, self.scratch_dir)
        try:
            with zipfile.ZipFile(self.path) as zf:
                self._infos = zf.infolist()
                zf.extractall(self.scratch_dir)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, RuntimeError) as e:
            self.close()
            raise ArchiveFormatError(self.path, str(e)) from e
        return self.scratch_dir

    def close(self) -> None:
        if self.scratch_dir:
            shutil.rmtree(self.scratch_dir, ignore_errors=True)
            log.debug("Removed scratch directory %s", self.scratch_dir)
            self.scratch_dir = None

    def _require_open(self) -> str:
        if not self.scratch_dir:
            raise RuntimeError("PnPArchive is not extracted; use it as a context manager")
        return self.scratch_dir

    @property
    def members(self) -> List[str]:
        return [i.filename for i in self._infos if not i.is_dir()]

    def member_path(self, name: str) -> str:
        return os.path.join(self._require_open(), *name.split("/"))

    def xml_members(self) -> List[str]:
        return [n for n in self.members if n.lower().endswith(".xml")]

    def documents(self) -> Iterator[TemplateDocument]:
        """Every contained XML part whose root is a provisioning template, in package order."""
        self._require_open()
        for name in self.xml_members():
            path = self.member_path(name)
            if is_template_tag(read_root_tag(path)):
                log.debug("Found provisioning template %s in %s", name, self.path)
                yield load_template(path, name=name)

    def manifest(self) -> TemplateDocument:
        for doc in self.documents():
            return doc
        raise ManifestNotFoundError(self.path, self.xml_members())

    def serialize(self, out_path: str) -> str:
        return serialize(self._require_open(), out_path, order=self._infos, source=self.path)


def _relative_files(scratch_dir: str) -> List[str]:
    names: List[str] = []
    for dirpath, _dirnames, filenames in os.walk(scratch_dir):
        for filename in filenames:
            full = os.path.join(dirpath, filename)
            names.append(os.path.relpath(full, scratch_dir).replace(os.sep, "/"))
    return sorted(names)


def serialize(scratch_dir: str, out_path: str, *, order: Optional[Sequence[zipfile.ZipInfo]] = None,
              source: Optional[str] = None) -> str:
    """
    Package the contents of ``scratch_dir`` into a new ZIP at ``out_path``.

    Members listed in ``order`` keep their position, timestamp and
    compression; anything else is appended in sorted order.  The package is
    written to a temporary file first and moved over ``out_path``, replacing
    an existing file.  ``out_path`` may never be the ``source`` package.

    :raises RewriteIOError: when the package cannot be written.
    """
    if source and os.path.abspath(out_path) == os.path.abspath(source):
        raise RewriteIOError(out_path, "output path is the source package")

    originals: Dict[str, zipfile.ZipInfo] = {i.filename: i for i in (order or [])}
    on_disk = _relative_files(scratch_dir)
    present = set(on_disk)
    names = [i.filename for i in (order or []) if i.is_dir() or i.filename in present]
    names += [n for n in on_disk if n not in originals]

    out_dir = os.path.dirname(os.path.abspath(out_path))
    tmp_path = None
    try:
        os.makedirs(out_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".pnp-remap-", suffix=".tmp", dir=out_dir)
        os.close(fd)
        with zipfile.ZipFile(tmp_path, "w") as zf:
            for name in names:
                orig = originals.get(name)
                info = zipfile.ZipInfo(name, date_time=orig.date_time if orig else _DEFAULT_DATE)
                info.compress_type = orig.compress_type if orig else zipfile.ZIP_DEFLATED
                if orig is not None:
                    info.external_attr = orig.external_attr
                if name.endswith("/"):
                    zf.writestr(info, b"")
                    continue
                with open(os.path.join(scratch_dir, *name.split("/")), "rb") as f:
                    zf.writestr(info, f.read())
        os.replace(tmp_path, out_path)
        tmp_path = None
    except (OSError, zipfile.BadZipFile, ValueError) as e:
        raise RewriteIOError(out_path, str(e)) from e
    finally:
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)

    log.info("Wrote package %s (%d members)", out_path, len(names))
    return out_path


def open_document(path: str) -> TemplateDocument:
    """Parse the provisioning template of the package at ``path``.

    The returned document is detached from the (already removed) scratch
    directory.
    """
    with PnPArchive(path) as archive:
        doc = archive.manifest()
    doc.path = None
    return doc
