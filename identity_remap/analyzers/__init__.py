"""
Read-only analysis of provisioning templates.

* :mod:`identity_remap.analyzers.template_inspector` – summaries of a template and comparisons between two
"""

from .template_inspector import compare_archives, diff, summarize, summarize_archive, write_diff_report

__all__ = ["compare_archives", "diff", "summarize", "summarize_archive", "write_diff_report"]
