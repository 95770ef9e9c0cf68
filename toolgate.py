"""toolgate: guardrails for model-proposed tool calls.

Checks a single command, path, pattern, URL or tool name against the
configured policy and prints the verdict as JSON.

Usage:
    toolgate command "git status"
    toolgate --policy allowlist-only path ../secrets.txt
    toolgate url http://169.254.169.254/latest/meta-data
    toolgate init-config

Exit status: 0 allowed, 1 denied, 2 usage or config error.

Run 'toolgate --help' for all options.
"""

import argparse
import json
import os
import sys

# Add parent directory to path so imports work when run directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.audit_log import AuditLog
from core.config import (
    DEFAULTS, ConfigError, load_config, merge_cli_args, policy_from_config,
    generate_sample_config,
)
from core.mediator import format_refusal
from core.tool_policy import POLICY_MODES, PROFILES, check_command, is_tool_allowed
from core.validation import ErrorKind, guard_path, guard_pattern, guard_url

EXIT_ALLOWED = 0
EXIT_DENIED = 1
EXIT_ERROR = 2

CONFIG_FILENAME = ".toolgate.toml"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolgate",
        description="toolgate: check tool calls against the configured policy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None, help="Path to config file (default: search)")
    parser.add_argument("--no-config", action="store_true", help="Ignore config files, use defaults")
    parser.add_argument("--workspace", default=None, help="Workspace root (default: .)")
    parser.add_argument("--policy", choices=POLICY_MODES, default=None,
                        help="Command policy mode (default: block-destructive)")
    parser.add_argument("--profile", choices=list(PROFILES), default=None,
                        help="Tool profile (default: coding)")
    parser.add_argument("--audit-dir", default=None, help="Write a JSONL audit log to this directory")

    sub = parser.add_subparsers(dest="subcommand", required=True)

    p = sub.add_parser("command", help="Check a shell command")
    p.add_argument("text")

    p = sub.add_parser("path", help="Check a file path")
    p.add_argument("text")
    p.add_argument("--allow-absolute", action="store_true",
                   help="Keep absolute paths instead of re-rooting them")

    p = sub.add_parser("pattern", help="Check a glob or grep pattern")
    p.add_argument("text")
    p.add_argument("--max-length", type=int, default=None, help="Maximum pattern length")

    p = sub.add_parser("url", help="Check a URL for web fetches")
    p.add_argument("text")

    p = sub.add_parser("tool", help="Check whether a named tool is enabled")
    p.add_argument("name")

    p = sub.add_parser("init-config", help=f"Write a sample {CONFIG_FILENAME}")
    p.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def _init_config(force: bool) -> int:
    if os.path.exists(CONFIG_FILENAME) and not force:
        print(f"Error: {CONFIG_FILENAME} already exists (use --force to overwrite).",
              file=sys.stderr)
        return EXIT_ERROR
    with open(CONFIG_FILENAME, "w", encoding="utf-8") as f:
        f.write(generate_sample_config())
    print(f"Created {CONFIG_FILENAME} with default settings.")
    return EXIT_ALLOWED


def evaluate(args, config: dict) -> dict:
    """Run the subcommand's check and return a JSON-ready verdict."""
    policy = policy_from_config(config)
    workspace = config.get("workspace") or "."

    if args.subcommand == "tool":
        gate = is_tool_allowed(args.name, policy)
        verdict = {"ok": gate["allowed"], "value": args.name}
        if not gate["allowed"]:
            verdict.update(error_kind=ErrorKind.POLICY_DENIED, message=gate["reason"])
        return verdict

    if args.subcommand == "command":
        result = check_command(args.text, policy)
    elif args.subcommand == "path":
        result = guard_path(args.text, workspace, config.get("allow_absolute_paths", False))
    elif args.subcommand == "pattern":
        result = guard_pattern(args.text, config.get("max_pattern_length", 500))
    else:
        result = guard_url(args.text)
    return result.to_dict()


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.subcommand == "init-config":
        return _init_config(args.force)

    # Load configuration: DEFAULTS -> config file -> CLI args
    try:
        if args.no_config:
            config = merge_cli_args(dict(DEFAULTS), args)
        else:
            config = merge_cli_args(load_config(args.config), args)
        verdict = evaluate(args, config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_ERROR

    if not verdict["ok"]:
        verdict["refusal"] = format_refusal(verdict["error_kind"], verdict.get("message", ""))

    if config.get("audit_dir"):
        audit = AuditLog(config["audit_dir"])
        try:
            audit.session_start(config.get("workspace") or ".", config["policy"],
                                config["tool_profile"], config.get("_config_file", ""))
            audit.decision(args.subcommand, verdict["ok"], verdict.get("error_kind", ""),
                           verdict.get("message", ""))
            audit.session_end(1, 0 if verdict["ok"] else 1)
        finally:
            audit.close()

    print(json.dumps(verdict, indent=2))
    return EXIT_ALLOWED if verdict["ok"] else EXIT_DENIED


if __name__ == "__main__":
    sys.exit(main())
