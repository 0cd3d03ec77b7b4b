import hashlib
import os
import sys
import xml.etree.ElementTree as ET
import zipfile

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from conftest import SITE_TEMPLATE, lists_template, read_member, write_csv, write_pnp
from identity_remap.migrators.identity_rewriter import derive_output_path, rewrite_archive, rewrite_document
from identity_remap.parsers.pnp_archive import open_document
from identity_remap.parsers.template_schema import parse_template_bytes
from identity_remap.utils.errors import ArchiveFormatError, ManifestNotFoundError, RewriteIOError
from identity_remap.utils.mapping_table import load_mapping_table


def _table(tmp_path, text):
    return load_mapping_table(write_csv(tmp_path / "map.csv", text))


def _sha(path):
    with open(path, "rb") as f:
        return hashlib.sha256(f.read()).hexdigest()


def test_administrator_is_rewritten(tmp_path, site_pnp):
    table = _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n")
    result = rewrite_archive(site_pnp, table)
    assert result.output_path == str(tmp_path / "site-migrated.pnp")
    text = read_member(result.output_path, "template.xml")
    assert '<pnp:User Name="i:0#.f|membership|john@b.com" />' in text
    assert "john@a.com" not in text


def test_every_embedded_token_is_replaced_and_nothing_else(tmp_path, site_pnp):
    table = _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n")
    result = rewrite_archive(site_pnp, table)
    doc = open_document(result.output_path)
    template = doc.templates()[0]
    row = template.lists()[0].data_rows()[0].values()
    assert row["Reviewers"] == "john@b.com;carl@a.com"
    assert row["Title"] == "Onboard Carl"
    assert template.files()[0].properties() == {"Editor": "john@b.com", "ContentTypeId": "0x0101"}
    assert template.pages()[0].element.get("Author") == "john@b.com"
    assert result.substitutions == {"john@a.com": 4}


def test_skip_entry_leaves_field_unchanged(tmp_path, site_pnp):
    table = _table(tmp_path, "SourceUser,TargetUser\nold@a.com,\n")
    assert len(table.skipped_entries()) == 1
    result = rewrite_archive(site_pnp, table)
    assert result.total_substitutions == 0
    assert result.modified_documents == []
    assert read_member(result.output_path, "template.xml") == SITE_TEMPLATE


def test_unmodified_members_pass_through_byte_identical(tmp_path, site_pnp):
    table = _table(tmp_path, "SourceUser,TargetUser\ncarl@a.com,carl@b.com\n")
    result = rewrite_archive(site_pnp, table)
    assert result.modified_documents == ["template.xml"]
    with zipfile.ZipFile(site_pnp) as src, zipfile.ZipFile(result.output_path) as dst:
        assert dst.namelist() == src.namelist()
        for name in ("[Content_Types].xml", "Files/logo.png", "Files/notes.xml"):
            assert dst.read(name) == src.read(name)


def test_source_package_is_never_modified(tmp_path, site_pnp):
    before = _sha(site_pnp)
    rewrite_archive(site_pnp, _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n"))
    assert _sha(site_pnp) == before


def test_rewrite_is_idempotent(tmp_path, site_pnp):
    table = _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\nold@a.com,\n")
    first = rewrite_archive(site_pnp, table)
    second = rewrite_archive(first.output_path, table, str(tmp_path / "second.pnp"))
    assert second.total_substitutions == 0
    assert read_member(second.output_path, "template.xml") == read_member(first.output_path, "template.xml")


def test_existing_output_is_replaced(tmp_path, site_pnp):
    out = tmp_path / "site-migrated.pnp"
    out.write_text("stale")
    rewrite_archive(site_pnp, _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n"))
    assert zipfile.is_zipfile(out)


def test_case_of_source_token_does_not_matter(tmp_path, site_pnp):
    table = _table(tmp_path, "SourceUser,TargetUser\nmary.jones@a.com,Mary.Jones@B.com\n")
    result = rewrite_archive(site_pnp, table)
    text = read_member(result.output_path, "template.xml")
    assert '<pnp:User Name="Mary.Jones@B.com" />' in text
    assert 'Owner="Mary.Jones@B.com"' in text
    assert result.substitutions == {"mary.jones@a.com": 2}


def test_structural_file_attributes_are_not_rewritten(tmp_path):
    xml = SITE_TEMPLATE.replace('Src="Policies/handbook.docx"', 'Src="john@a.com/handbook.docx"')
    doc = parse_template_bytes(xml.encode("utf-8"))
    counts = rewrite_document(doc, _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n"))
    assert doc.templates()[0].files()[0].src == "john@a.com/handbook.docx"
    assert counts["john@a.com"] == 4
    assert doc.modified


def test_document_not_marked_modified_without_substitution(tmp_path):
    doc = parse_template_bytes(lists_template("Tasks").encode("utf-8"))
    assert rewrite_document(doc, _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n")) == {}
    assert doc.modified is False


def test_archive_errors_propagate_and_leave_no_output(tmp_path, no_scratch_left):
    table = _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n")
    with pytest.raises(ArchiveFormatError):
        rewrite_archive(str(tmp_path / "missing.pnp"), table)
    empty = write_pnp(tmp_path / "empty.pnp", {"readme.txt": "nothing here"})
    with pytest.raises(ManifestNotFoundError):
        rewrite_archive(empty, table)
    assert not os.path.exists(tmp_path / "empty-migrated.pnp")
    assert list(no_scratch_left.iterdir()) == []


def test_derive_output_path():
    assert derive_output_path("/x/site.pnp") == "/x/site-migrated.pnp"
    assert derive_output_path("site.PNP", "-new") == "site-new.PNP"
    assert derive_output_path("site") == "site-migrated.pnp"


DEFAULT_NS_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<Provisioning xmlns="http://schemas.dev.office.com/PnP/2022/09/ProvisioningSchema">
  <Templates ID="CONTAINER">
    <ProvisioningTemplate ID="T" Version="1">
      <Security>
        <AdditionalAdministrators>
          <User Name='i:0#.f|membership|john@a.com'/>
        </AdditionalAdministrators>
      </Security>
      <!-- rows exported by hand -->
      <Lists>
        <ListInstance Title="R&amp;D Tasks" Url="Lists/RD" TemplateType="100">
          <DataRows>
            <DataRow>
              <DataValue FieldName="Reviewers">john@a.com &amp; carl@a.com</DataValue>
              <DataValue FieldName="AssignedTo"><![CDATA[john@a.com]]></DataValue>
            </DataRow>
          </DataRows>
        </ListInstance>
      </Lists>
    </ProvisioningTemplate>
  </Templates>
</Provisioning>
"""


def test_rewritten_member_differs_only_in_swapped_tokens(tmp_path, site_pnp):
    table = _table(tmp_path, "SourceUser,TargetUser\ncarl@a.com,carl@b.com\n")
    result = rewrite_archive(site_pnp, table)
    assert result.substitutions == {"carl@a.com": 2}
    with zipfile.ZipFile(result.output_path) as zf:
        data = zf.read("template.xml")
    assert data == SITE_TEMPLATE.replace("carl@a.com", "carl@b.com").encode("utf-8")
    assert data.startswith(b'<?xml version="1.0" encoding="utf-8"?>')
    assert data.endswith(b"</pnp:Provisioning>\n")


def test_default_namespace_template_keeps_its_markup(tmp_path):
    # A prefix registered by another document must not leak into this one.
    ET.register_namespace("pnp", "http://schemas.dev.office.com/PnP/2022/09/ProvisioningSchema")
    pnp = write_pnp(tmp_path / "plain.pnp", {"template.xml": DEFAULT_NS_TEMPLATE})
    table = _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n")
    result = rewrite_archive(pnp, table)
    assert result.substitutions == {"john@a.com": 3}
    text = read_member(result.output_path, "template.xml")
    assert text == DEFAULT_NS_TEMPLATE.replace("john@a.com", "john@b.com")
    assert "pnp:" not in text
    assert "ns0:" not in text


def test_rewrite_output_does_not_depend_on_earlier_documents(tmp_path, site_pnp):
    table = _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n")
    first = parse_template_bytes(DEFAULT_NS_TEMPLATE.encode("utf-8"))
    rewrite_document(first, table)
    rewrite_archive(site_pnp, table)
    second = parse_template_bytes(DEFAULT_NS_TEMPLATE.encode("utf-8"))
    rewrite_document(second, table)
    assert first.to_bytes() == second.to_bytes()


def test_in_memory_values_follow_the_rewrite(tmp_path):
    doc = parse_template_bytes(DEFAULT_NS_TEMPLATE.encode("utf-8"))
    rewrite_document(doc, _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n"))
    row = doc.templates()[0].lists()[0].data_rows()[0].values()
    assert row == {"Reviewers": "john@b.com & carl@a.com", "AssignedTo": "john@b.com"}


def test_wide_encodings_cannot_be_patched_in_place(tmp_path):
    xml = SITE_TEMPLATE.replace('encoding="utf-8"', 'encoding="utf-16"')
    pnp = write_pnp(tmp_path / "wide.pnp", {"template.xml": xml.encode("utf-16")})
    with pytest.raises(RewriteIOError):
        rewrite_archive(pnp, _table(tmp_path, "SourceUser,TargetUser\njohn@a.com,john@b.com\n"))
