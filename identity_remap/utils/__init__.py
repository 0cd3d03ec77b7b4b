"""
Utility helpers used by the remapping tool.

This subpackage exposes the error taxonomy and structured event reports,
the identity token helpers, the mapping table loader, mapping template
generation and the pre-flight validation of target identities.
"""

from .errors import EVENTS, report_error, report_ok
from .identity_tokens import extract_identity_tokens, normalize_identity
from .mapping_table import MappingTable, load_mapping_table
from .mapping_template import generate_mapping_template
from .pre_flight_checks import require_valid, validate_mapping

__all__ = [
    "EVENTS",
    "report_error",
    "report_ok",
    "extract_identity_tokens",
    "normalize_identity",
    "MappingTable",
    "load_mapping_table",
    "generate_mapping_template",
    "require_valid",
    "validate_mapping",
]
