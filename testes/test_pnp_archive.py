import os
import sys
import zipfile

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from conftest import lists_template, write_pnp
from identity_remap.parsers.pnp_archive import PnPArchive, open_document, serialize
from identity_remap.parsers.template_schema import load_template, parse_template_bytes
from identity_remap.utils.errors import ArchiveFormatError, ManifestNotFoundError, RewriteIOError


def test_missing_file_is_an_archive_format_error(tmp_path):
    with pytest.raises(ArchiveFormatError) as excinfo:
        open_document(str(tmp_path / "absent.pnp"))
    assert "absent.pnp" in str(excinfo.value)


def test_non_zip_file_is_an_archive_format_error(tmp_path):
    path = tmp_path / "broken.pnp"
    path.write_text("this is not a zip")
    with pytest.raises(ArchiveFormatError):
        open_document(str(path))


def test_package_without_template_raises_manifest_not_found(tmp_path, no_scratch_left):
    path = write_pnp(tmp_path / "empty.pnp", {"a.xml": "<Other />", "b.txt": "hello"})
    with pytest.raises(ManifestNotFoundError) as excinfo:
        open_document(path)
    assert excinfo.value.scanned == ["a.xml"]
    assert list(no_scratch_left.iterdir()) == []


def test_template_is_found_after_other_xml_parts(site_pnp):
    doc = open_document(site_pnp)
    assert doc.name == "template.xml"
    assert [t.id for t in doc.templates()] == ["TEMPLATE-HR"]


def test_foreign_namespace_root_is_not_a_template(tmp_path):
    xml = '<ProvisioningTemplate xmlns="http://example.com/other" />'
    path = write_pnp(tmp_path / "foreign.pnp", {"t.xml": xml})
    with pytest.raises(ManifestNotFoundError):
        open_document(path)


def test_malformed_xml_member_is_skipped_during_scan(tmp_path):
    path = write_pnp(tmp_path / "mixed.pnp", {"bad.xml": "<unclosed", "t.xml": lists_template("Tasks")})
    assert open_document(path).name == "t.xml"


def test_scratch_directory_removed_after_success_and_failure(site_pnp, no_scratch_left):
    with PnPArchive(site_pnp) as archive:
        assert os.path.isdir(archive.scratch_dir)
        assert archive.scratch_dir.startswith(str(no_scratch_left))
    assert archive.scratch_dir is None
    assert list(no_scratch_left.iterdir()) == []

    with pytest.raises(KeyError):
        with PnPArchive(site_pnp):
            raise KeyError("boom")
    assert list(no_scratch_left.iterdir()) == []


def test_serialize_keeps_member_order_and_bytes(site_pnp, tmp_path):
    out = str(tmp_path / "copy.pnp")
    with PnPArchive(site_pnp) as archive:
        archive.serialize(out)
    with zipfile.ZipFile(site_pnp) as src, zipfile.ZipFile(out) as dst:
        assert dst.namelist() == src.namelist()
        for name in src.namelist():
            assert dst.read(name) == src.read(name)
            assert dst.getinfo(name).date_time == src.getinfo(name).date_time


def test_serialize_replaces_existing_output(tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    (scratch / "t.xml").write_text(lists_template("Tasks"))
    out = tmp_path / "out.pnp"
    out.write_text("old content")
    serialize(str(scratch), str(out))
    with zipfile.ZipFile(out) as zf:
        assert zf.namelist() == ["t.xml"]


def test_serialize_refuses_to_overwrite_the_source(site_pnp):
    with PnPArchive(site_pnp) as archive:
        with pytest.raises(RewriteIOError):
            archive.serialize(site_pnp)


def test_unmodified_document_serializes_to_its_source(tmp_path):
    from conftest import SITE_TEMPLATE

    doc = parse_template_bytes(SITE_TEMPLATE.encode("utf-8"))
    assert doc.to_bytes() == SITE_TEMPLATE.encode("utf-8")

    path = tmp_path / "t.xml"
    path.write_bytes(doc.to_bytes())
    again = load_template(str(path))
    assert [lst.title for lst in again.templates()[0].lists()] == ["Tasks", "Docs"]
