from __future__ import annotations

import argparse
import asyncio
import logging
import math
import sys
from pathlib import Path
from typing import Any, Optional

from checks import Check, status_is
from errors import ConfigurationError
from loadgen import RequestSpec, SingleRequestScenario
from metrics import MetricsSnapshot
from presets import PRESETS, get_preset
from ramp import parse_duration
from report import AsyncJSONLWriter, format_summary, write_prometheus, write_summary_json
from runner import RunConfig, TestExecutor

logger = logging.getLogger("vu_loadtest")


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _parse_stage(value: str) -> dict[str, Any]:
    duration_text, sep, target_text = value.rpartition(":")
    if not sep or not duration_text:
        raise argparse.ArgumentTypeError(
            f"Invalid stage '{value}'. Expected <duration>:<target>, e.g. 30s:20."
        )
    try:
        parse_duration(duration_text)
    except ConfigurationError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    try:
        target = int(target_text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"Invalid stage target '{target_text}'. Expected an integer."
        ) from exc
    if target < 0:
        raise argparse.ArgumentTypeError(f"Stage target must be >= 0, got {target}.")
    return {"duration": duration_text, "target": target}


def _parse_header(value: str) -> tuple[str, str]:
    name, sep, header_value = value.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid header '{value}'. Expected 'Name: value'."
        )
    return name.strip(), header_value.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Virtual-user load generator with flat or staged traffic profiles."
    )

    parser.add_argument("--url", required=True, help="Target URL requested by every iteration")
    parser.add_argument("--method", default="GET")
    parser.add_argument("--header", action="append", type=_parse_header, default=[])
    parser.add_argument("--body", default=None, help="Raw request body")

    parser.add_argument("--preset", choices=sorted(PRESETS), default=None)
    parser.add_argument("--vus", type=int, default=None)
    parser.add_argument("--duration", default=None, help="e.g. 30s, 10m, PT1M")
    parser.add_argument(
        "--stage",
        dest="stages",
        action="append",
        type=_parse_stage,
        default=None,
        help="Ramp stage <duration>:<target>; repeat for each stage",
    )
    parser.add_argument(
        "--sleep",
        dest="think_time",
        default=None,
        help="Think time in seconds, or uniform/normal/lognormal distribution spec.",
    )
    parser.add_argument(
        "--check-status",
        type=int,
        action="append",
        default=None,
        help="Record a 'status was <code>' check on every response",
    )

    parser.add_argument("--tick-interval-s", type=float, default=1.0)
    parser.add_argument("--grace-period-s", type=float, default=30.0)
    parser.add_argument("--timeout-s", type=float, default=60.0)
    parser.add_argument("--max-connections", type=int, default=None)
    parser.add_argument("--seed", type=int, default=42)

    parser.add_argument("--summary-export", type=Path, default=None)
    parser.add_argument("--out", type=Path, default=None, help="Per-iteration JSONL output")
    parser.add_argument("--prometheus-out", type=Path, default=None)
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
    )
    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.stages and (args.vus is not None or args.duration is not None):
        parser.error("--stage cannot be combined with --vus/--duration")
    if args.preset is None and not args.stages:
        if args.vus is None or args.duration is None:
            parser.error("--vus and --duration are required without --preset or --stage")
    if args.vus is not None and args.vus < 0:
        parser.error("--vus must be >= 0")
    if not math.isfinite(args.tick_interval_s) or args.tick_interval_s <= 0:
        parser.error("--tick-interval-s must be a finite value > 0")
    if not math.isfinite(args.grace_period_s) or args.grace_period_s < 0:
        parser.error("--grace-period-s must be a finite value >= 0")
    if not math.isfinite(args.timeout_s) or args.timeout_s <= 0:
        parser.error("--timeout-s must be a finite value > 0")
    if args.max_connections is not None and args.max_connections <= 0:
        parser.error("--max-connections must be > 0 when set")


def _resolve_options(args: argparse.Namespace) -> tuple[dict[str, Any], str, list[int]]:
    options: dict[str, Any] = {}
    think_time = "1"
    check_statuses: list[int] = []
    if args.preset:
        preset = get_preset(args.preset)
        options = dict(preset.options)
        think_time = preset.think_time
        if preset.check_status is not None:
            check_statuses.append(preset.check_status)

    if args.stages:
        options = {"stages": args.stages}
    elif args.vus is not None or args.duration is not None:
        if "stages" in options:
            options = {}
        if args.vus is not None:
            options["vus"] = args.vus
        if args.duration is not None:
            options["duration"] = args.duration

    if args.think_time is not None:
        think_time = args.think_time
    if args.check_status is not None:
        check_statuses = list(args.check_status)
    return options, think_time, check_statuses


def build_config(args: argparse.Namespace) -> RunConfig:
    options, think_time, check_statuses = _resolve_options(args)
    request = RequestSpec(
        url=args.url,
        method=args.method.upper(),
        headers=dict(args.header),
        content=args.body.encode("utf-8") if args.body is not None else None,
    )
    scenario = SingleRequestScenario(request, think_time=think_time)
    checks = [Check(f"status was {code}", status_is(code)) for code in check_statuses]
    return RunConfig.from_options(
        options,
        scenario=scenario,
        checks=checks,
        tick_interval_s=args.tick_interval_s,
        grace_period_s=args.grace_period_s,
        request_timeout_s=args.timeout_s,
        max_connections=args.max_connections,
        seed=args.seed,
    )


async def _run_from_args(args: argparse.Namespace, config: RunConfig) -> MetricsSnapshot:
    writer: Optional[AsyncJSONLWriter] = None
    if args.out is not None:
        writer = AsyncJSONLWriter(args.out)
        config.on_outcome = writer.write_outcome
    try:
        return await TestExecutor(config).run()
    finally:
        if writer is not None:
            writer.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    configure_logging(args.log_level)

    try:
        config = build_config(args)
    except ConfigurationError as exc:
        parser.error(str(exc))

    try:
        snapshot = asyncio.run(_run_from_args(args, config))
    except ConfigurationError as exc:
        parser.error(str(exc))

    print(format_summary(snapshot))
    if args.summary_export is not None:
        write_summary_json(args.summary_export, snapshot, resolved_config=config.describe())
        logger.info("summary written to %s", args.summary_export)
    if args.prometheus_out is not None:
        write_prometheus(args.prometheus_out, snapshot)
        logger.info("prometheus metrics written to %s", args.prometheus_out)


if __name__ == "__main__":
    main()
