"""
Entry point for the cross-domain identity remapping tool.

Subcommands::

    python main.py extract site.pnp --out reports/user_mapping.csv
    python main.py validate reports/user_mapping.csv
    python main.py rewrite site.pnp reports/user_mapping.csv
    python main.py inspect site.pnp --json
    python main.py compare before.pnp after.pnp --csv reports/diff.csv
"""

import argparse
import json
import sys
from typing import List, Optional

from identity_remap.analyzers.template_inspector import write_diff_report
from identity_remap.migration_tool import IdentityMigrationTool, configure_logging
from identity_remap.utils.errors import IdentityRemapError

CONFIG_FILE = "config/migration_config.json"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Remap user identities inside SharePoint provisioning packages")
    p.add_argument("--config", default=CONFIG_FILE, help="Path to the JSON configuration file")
    p.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
    p.add_argument("--quiet", action="store_true", help="Do not log to the console")
    p.add_argument("--include-system-accounts", action="store_true", default=None,
                   help="Keep service accounts in extraction output")
    sub = p.add_subparsers(dest="command", required=True)

    ex = sub.add_parser("extract", help="Write a mapping template from a package or the live site")
    ex.add_argument("source", nargs="?", help=".pnp package or template .xml; omit with --live")
    ex.add_argument("--live", action="store_true", help="Read identities from the destination site")
    ex.add_argument("--group", action="append", dest="groups", help="Site group to enumerate (repeatable)")
    ex.add_argument("--list", action="append", dest="lists", default=[], help="List whose items are scanned (repeatable)")
    ex.add_argument("--out", default="reports/user_mapping.csv", help="Mapping template CSV to write")

    va = sub.add_parser("validate", help="Check that every target identity exists in the destination site")
    va.add_argument("mapping")
    va.add_argument("--no-ensure", action="store_true", help="Only look users up; never add them to the site")

    rw = sub.add_parser("rewrite", help="Validate the mapping and write a rewritten package")
    rw.add_argument("archive")
    rw.add_argument("mapping")
    rw.add_argument("--out", default=None, help="Output package (default: <name>-migrated.pnp)")
    rw.add_argument("--allow-invalid", action="store_true", default=None,
                    help="Rewrite even when some targets failed validation")
    rw.add_argument("--skip-validation", action="store_true", help="Do not contact the destination site")

    ins = sub.add_parser("inspect", help="Summarize a package")
    ins.add_argument("source")
    ins.add_argument("--no-users", action="store_true")
    ins.add_argument("--no-content", action="store_true")
    ins.add_argument("--detailed", action="store_true", help="Include content types and site fields")
    ins.add_argument("--json", action="store_true", help="Print the summary as JSON")

    cmp_ = sub.add_parser("compare", help="Compare two packages")
    cmp_.add_argument("source_a")
    cmp_.add_argument("source_b")
    cmp_.add_argument("--key", default=None, help="Key property used for every entity kind")
    cmp_.add_argument("--detailed", action="store_true")
    cmp_.add_argument("--json", action="store_true", help="Print the diff as JSON")
    cmp_.add_argument("--csv", default=None, help="Also write the diff as CSV to this path")
    return p


def run(args: argparse.Namespace, tool: IdentityMigrationTool) -> int:
    if args.command == "extract":
        if args.live:
            identities = tool.extract_live_identities(groups=args.groups, lists=args.lists)
        elif args.source:
            identities = tool.extract_identities(args.source)
        else:
            tool.log_message("extract needs a source package or --live", level="ERROR")
            return 2
        tool.write_mapping_template(identities, args.out)
        print(f"{len(identities)} identities written to {args.out}")

    elif args.command == "validate":
        table = tool.load_mapping(args.mapping)
        report = tool.validate(table, ensure_missing=False if args.no_ensure else None)
        for outcome in report.outcomes:
            print(f"{outcome.status.value:8} {outcome.entry.source_identity} -> {outcome.entry.target_identity}: {outcome.reason}")
        print(f"{report.valid_count} valid, {report.invalid_count} invalid")
        return 0 if report.is_valid else 1

    elif args.command == "rewrite":
        result = tool.rewrite(args.archive, args.mapping, args.out, skip_validation=args.skip_validation,
                              allow_invalid=args.allow_invalid)
        print(f"{result.total_substitutions} reference(s) rewritten; new package: {result.output_path}")

    elif args.command == "inspect":
        summary = tool.inspect(args.source, include_users=not args.no_users, include_content=not args.no_content,
                               detailed=args.detailed)
        if args.json:
            print(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False))
        else:
            print("\n".join(tool.summary_lines(summary)))

    elif args.command == "compare":
        result = tool.compare(args.source_a, args.source_b, args.key, detailed=args.detailed)
        if args.csv:
            write_diff_report(result, args.csv)
        if args.json:
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        else:
            for kind, entity in result.kinds.items():
                print(f"{kind}: {len(entity.only_in_a)} only in A, {len(entity.only_in_b)} only in B, "
                      f"{len(entity.in_both)} in both")
                for key in entity.only_in_a:
                    print(f"  - {key}")
                for key in entity.only_in_b:
                    print(f"  + {key}")
        return 0 if result.is_identical else 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function to run the identity remapping tool.
    """
    args = build_parser().parse_args(argv)
    tool = IdentityMigrationTool(config_file=args.config)
    configure_logging(tool.reports_dir, args.log_level, args.quiet)
    if args.include_system_accounts:
        tool.config["migration"]["include_system_accounts"] = True

    try:
        return run(args, tool)
    except IdentityRemapError as e:
        tool.log_message(str(e), level="ERROR")
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
