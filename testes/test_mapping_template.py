import csv
import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from conftest import SITE_TEMPLATE
from identity_remap.extractors import extract_from_document
from identity_remap.parsers.template_schema import parse_template_bytes
from identity_remap.utils.mapping_table import MAPPING_COLUMNS, load_mapping_table
from identity_remap.utils.mapping_template import generate_mapping_template


def test_template_has_five_columns_and_identity_targets(tmp_path):
    found = extract_from_document(parse_template_bytes(SITE_TEMPLATE.encode("utf-8")))
    out = generate_mapping_template(found, str(tmp_path / "reports" / "user_mapping.csv"))

    with open(out, newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert tuple(rows[0]) == MAPPING_COLUMNS
    assert [r[0] for r in rows[1:]] == ["carl@a.com", "john@a.com", "Mary.Jones@A.com", "old@a.com"]
    for row in rows[1:]:
        assert row[1] == row[0]
    assert rows[2][4] == "administrator"


def test_generated_template_loads_as_a_mapping_table(tmp_path):
    found = extract_from_document(parse_template_bytes(SITE_TEMPLATE.encode("utf-8")))
    out = generate_mapping_template(found, str(tmp_path / "user_mapping.csv"))
    table = load_mapping_table(out)
    assert len(table) == 4
    assert table.target_for("MARY.JONES@a.com") == "Mary.Jones@A.com"
