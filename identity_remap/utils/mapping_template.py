"""
Generation of mapping template CSV files.

The :func:`generate_mapping_template` helper writes the identities found by
the extractors into a CSV with the same five columns the mapping loader
reads.  ``TargetUser`` is pre-filled with ``SourceUser`` so an operator only
has to edit the rows that change domain; ``Notes`` records where the
identity was first seen.
"""

from __future__ import annotations

import csv
import os
from typing import Iterable

from identity_remap.models.identity import ExtractedIdentity
from identity_remap.utils.mapping_table import MAPPING_COLUMNS


def generate_mapping_template(identities: Iterable[ExtractedIdentity], out_path: str = "reports/user_mapping.csv") -> str:
    """Write a mapping template CSV.

    Parameters
    ----------
    identities:
        Extracted identities, usually the output of
        :func:`identity_remap.extractors.extract_from_document`.
    out_path:
        Location of the CSV file to be written.  The parent directory is
        created automatically.

    Returns
    -------
    str
        The path of the generated CSV file.
    """
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(MAPPING_COLUMNS)
        for item in identities:
            ref = item.reference
            display = ref.display_name or ref.raw
            writer.writerow([ref.raw, ref.raw, display, display, str(item.provenance)])
    return out_path
