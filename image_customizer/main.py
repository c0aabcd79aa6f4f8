from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

import yaml

from .build import BuildOrchestrator
from .build_config import load_build_config
from .checkpoints import CheckpointStore
from .errors import ErrorKind, error_kind
from .logging_utils import DEFAULT_LOG_PATH, configure_logging, summarize_events

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = "build_config.yaml"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_PREREQUISITE = 3
EXIT_RESOURCES = 4

_EXIT_CODES = {
    ErrorKind.VALIDATION_FAILURE: EXIT_VALIDATION,
    ErrorKind.INTEGRITY_MISMATCH: EXIT_VALIDATION,
    ErrorKind.MISSING_PREREQUISITE: EXIT_PREREQUISITE,
    ErrorKind.PERMISSION_DENIED: EXIT_PREREQUISITE,
    ErrorKind.RESOURCE_EXHAUSTION: EXIT_RESOURCES,
}


def exit_code_for(err: BaseException) -> int:
    return _EXIT_CODES.get(error_kind(err), EXIT_FAILURE)


def cmd_build(args: argparse.Namespace) -> int:
    actual_log_path = configure_logging(log_path=args.log)

    try:
        cfg = load_build_config(args.config)
        build_id = args.build_id
        if args.resume:
            build_id = args.resume
            if build_id == "last":
                build_id = CheckpointStore(cfg.checkpoint_path, stage_order=()).last_build_id()
                if build_id is None:
                    logger.error("No checkpointed build to resume in %s", cfg.checkpoint_path)
                    return EXIT_VALIDATION
        result = BuildOrchestrator(
            cfg,
            build_id=build_id,
            resume=bool(args.resume),
            log_path=actual_log_path,
        ).run()
    except Exception as e:
        code = exit_code_for(e)
        logger.exception("Build failed (%s, exit %d)", error_kind(e).value, code)
        return code

    logger.info(
        "Build %s finished: ran=%s skipped=%s",
        result.build_id,
        ",".join(result.ran_stages) or "-",
        ",".join(result.skipped_stages) or "-",
    )
    for what, path in result.outputs.items():
        logger.info("Output %s: %s", what, path)
    return EXIT_OK


def cmd_telemetry(args: argparse.Namespace) -> int:
    configure_logging(log_path=args.log, also_console=False)
    summary = summarize_events(args.events, slow_seconds=args.slow_seconds, failure_ratio=args.failure_ratio)
    if not summary:
        print(f"No step events in {args.events}")
        return EXIT_OK
    sys.stdout.write(yaml.safe_dump(summary, sort_keys=True))
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="image-customizer")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to the build log")
    sub = p.add_subparsers(dest="cmd", required=True)

    b = sub.add_parser("build", help="Customize an image artifact")
    b.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to build config (yaml)")
    b.add_argument("--build-id", default=None, help="Identifier for this build (default: timestamp)")
    b.add_argument(
        "--resume",
        default=None,
        metavar="BUILD_ID",
        help="Resume a build, skipping its checkpointed stages ('last' for the most recent)",
    )
    b.set_defaults(fn=cmd_build)

    t = sub.add_parser("telemetry", help="Summarize step timings from the events file")
    t.add_argument("--events", default="logs/build-events.jsonl", help="Path to build events (jsonl)")
    t.add_argument("--slow-seconds", type=float, default=300.0)
    t.add_argument("--failure-ratio", type=float, default=0.25)
    t.set_defaults(fn=cmd_telemetry)

    args = p.parse_args(argv)
    return int(args.fn(args))


if __name__ == "__main__":
    raise SystemExit(main())
