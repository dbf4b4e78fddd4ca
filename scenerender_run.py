#!/usr/bin/env python3
from __future__ import annotations

import argparse
from typing import List, Optional

from scenerender.catalog import DEFAULT_SCENES, QUALITY_LEVELS
from scenerender.orchestrator import run_orchestrator, setup_logging


class _Parser(argparse.ArgumentParser):
    # Usage errors share exit code 1 with every other validation failure.
    def error(self, message):
        self.print_usage()
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    p = _Parser(
        description="Render manim scenes concurrently and merge them into one video with ffmpeg."
    )

    # Positional render args
    p.add_argument("manim", help="Path to the manim executable")
    p.add_argument("script", help="Path to the .py file holding the scenes")
    p.add_argument("media_dir", help="manim working/media directory (created if missing)")
    p.add_argument("output", help="Final merged video path")
    p.add_argument("quality", help=f"Render quality ({'|'.join(QUALITY_LEVELS)})")
    p.add_argument("fps", nargs="?", default=None, help="Optional frame rate")

    # Retention; KEEP_TEMP=1 in the environment does the same.
    p.add_argument("--keep-temp", dest="keep_temp", action="store_true", help="Keep temp files (merge list)")

    p.add_argument(
        "--scene",
        dest="scenes",
        action="append",
        default=None,
        help=f"Scene to render, repeatable, in merge order (default: {' '.join(DEFAULT_SCENES)})",
    )

    # Orchestration knobs
    p.add_argument("--spawn_delay", type=float, default=0.0, help="Delay between scene launches.")
    p.add_argument("--child_grace_sec", type=float, default=60.0, help="Seconds before warning about silent renders.")

    # Env/logging
    p.add_argument("--env_file", default=None, help="JSON env var overrides applied to each render")
    p.add_argument("--log_file", default=None, help="Log file path (default: stdout)")
    p.add_argument("--pid_file", default=None, help="If set, write this runner's PID to the given path")
    p.add_argument("--dry_run", action="store_true", help="Log render/merge commands without running them")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    p = build_parser()
    # Options may sit between or after the positionals.
    args = p.parse_intermixed_args(argv)

    logger = setup_logging(args.log_file)
    rc = run_orchestrator(args, logger)
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
