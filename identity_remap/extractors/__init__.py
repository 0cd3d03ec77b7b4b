"""
Extractors for user identities.

This subpackage walks provisioning templates (or enumerates a live site
through a directory collaborator) and returns the distinct user identities
found, each with the location where it was first seen.  The output feeds the
mapping template that a human edits before the rewrite.
"""

from .identity_extractor import extract_from_directory, extract_from_document, filter_system_accounts

__all__ = ["extract_from_directory", "extract_from_document", "filter_system_accounts"]
