"""
Migrators that change identities in provisioning packages.

This subpackage provides the table-driven rewrite of user identities inside
``.pnp`` packages and the SharePoint REST client used to check that the
target identities exist in the destination site.  The REST client
encapsulates rate limiting, automatic retries on throttling and proper
header injection (bearer token and OData accept header).
"""

from .identity_rewriter import RewriteResult, derive_output_path, rewrite_archive, rewrite_document
from .sharepoint_directory import DirectoryCollaborator, SharePointDirectory

__all__ = [
    "RewriteResult",
    "derive_output_path",
    "rewrite_archive",
    "rewrite_document",
    "DirectoryCollaborator",
    "SharePointDirectory",
]
