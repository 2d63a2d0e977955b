"""Command-line entrypoint.

Usage:
    kiln install wfdb --formula-dir examples/formulas --enable wave
    kiln resolve wfdb --formula-dir examples/formulas --platform macos/aarch64
"""

from __future__ import annotations

import argparse
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from kiln.config import ToolchainConfig
from kiln.errors import KilnError
from kiln.fetch import DownloadCache, HttpFetcher
from kiln.models import STAGE_EXIT_CODES, Stage
from kiln.observability import StructuredLogger
from kiln.orchestrator import Orchestrator
from kiln.platforms import detect_platform, parse_platform
from kiln.policy import Policy
from kiln.recipe import find_formula, load_formula, parse_option_value
from kiln.resolver import resolve
from kiln.toolchain import ToolchainDriver
from kiln.verify import PkgConfig, Verifier

CONFIG_EXIT_CODE = 2


def _enable(value: str) -> tuple[str, bool]:
    return value, True


def _disable(value: str) -> tuple[str, bool]:
    return value, False


def _assign(value: str) -> tuple[str, bool]:
    name, sep, raw = value.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError("expected NAME=enabled|disabled")
    try:
        return name, parse_option_value(raw, option=name)
    except KilnError as exc:
        raise argparse.ArgumentTypeError(exc.message) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kiln", description="Formula execution engine")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("formula", help="Recipe path or formula name")
    common.add_argument(
        "--formula-dir",
        action="append",
        default=[],
        type=Path,
        help="Directory searched for <name>.toml / <name>.json (repeatable)",
    )
    common.add_argument("--enable", dest="features", action="append", type=_enable, default=[])
    common.add_argument("--disable", dest="features", action="append", type=_disable)
    common.add_argument(
        "--set",
        dest="features",
        action="append",
        type=_assign,
        metavar="NAME=enabled|disabled",
    )
    common.add_argument("--source", help="Source label to build from")
    common.add_argument("--platform", help="Target platform as os/arch (default: host)")
    common.add_argument(
        "--mutable-refs",
        choices=("warn", "error", "allow"),
        default="warn",
        help="How to treat branch-tracking source archives",
    )

    sub.add_parser("resolve", parents=[common], help="Print the resolved build plan as JSON")

    install_p = sub.add_parser("install", parents=[common], help="Fetch, build, install, verify")
    install_p.add_argument("--prefix", type=Path, help="Installation prefix")
    install_p.add_argument("--timeout", type=float, help="Per-stage timeout in seconds")
    install_p.add_argument("--offline", action="store_true", help="Only use cached sources")
    install_p.add_argument("--log-file", type=Path, help="Write structured logs as JSON lines")
    install_p.add_argument("--report", type=Path, help="Write the execution report as JSON")
    return parser


def cmd_resolve(args: argparse.Namespace) -> int:
    try:
        formula = load_formula(find_formula(args.formula, args.formula_dir))
        platform = parse_platform(args.platform) if args.platform else detect_platform()
        resolved = resolve(
            formula,
            platform,
            dict(args.features),
            source=args.source,
            policy=Policy(mutable_ref_policy=args.mutable_refs),
        )
    except KilnError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return STAGE_EXIT_CODES[Stage.RESOLVE]
    sys.stdout.write(resolved.to_json())
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    try:
        config = ToolchainConfig.from_env()
        overrides: dict[str, object] = {}
        if args.prefix is not None:
            overrides["prefix"] = args.prefix
        if args.timeout is not None:
            overrides["stage_timeout"] = args.timeout
        if overrides:
            config = config.with_overrides(**overrides)
    except KilnError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return CONFIG_EXIT_CODE

    try:
        recipe_path = find_formula(args.formula, args.formula_dir)
        platform = parse_platform(args.platform) if args.platform else detect_platform()
    except KilnError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return STAGE_EXIT_CODES[Stage.RESOLVE]

    policy = Policy(
        mutable_ref_policy=args.mutable_refs,
        network_mode="offline" if args.offline else "online",
    )
    logger = StructuredLogger()
    orchestrator = Orchestrator(
        fetcher=HttpFetcher(cache=DownloadCache(config.cache_root), policy=policy),
        driver=ToolchainDriver(config),
        verifier=Verifier(compiler=config.cc, pkg_config=PkgConfig()),
        platform=platform,
        policy=policy,
        logger=logger,
    )
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: orchestrator.cancel())
    try:
        result = orchestrator.install(recipe_path, dict(args.features), source=args.source)
    except KilnError as exc:
        if exc.result is None:
            raise
        result = exc.result
        print(result.describe(), file=sys.stderr)
    else:
        print(result.describe())
    finally:
        signal.signal(signal.SIGTERM, previous)
        if args.log_file is not None:
            logger.to_json_lines(args.log_file)

    if args.report is not None:
        result.to_json(args.report)
    return result.exit_code


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "resolve":
        return cmd_resolve(args)
    return cmd_install(args)


if __name__ == "__main__":
    raise SystemExit(main())
