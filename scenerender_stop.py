#!/usr/bin/env python3
from __future__ import annotations

import argparse
import signal
import sys
import time
from pathlib import Path
from typing import Optional

import psutil


def _read_pid(path: Path) -> Optional[int]:
    try:
        txt = path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None
    if not txt.isdigit():
        return None
    pid = int(txt)
    return pid if pid > 1 else None


def stop_runner(pid: int, log) -> bool:
    """
    Ask the runner to stop with a single SIGTERM. The runner's own cleanup then
    forwards one termination request to each scene still rendering.
    """
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        log(f"Runner pid={pid} is not running.")
        return False

    try:
        proc.send_signal(signal.SIGTERM)
    except psutil.Error as ex:
        log(f"Could not signal runner pid={pid}: {ex}")
        return False

    log(f"Sent SIGTERM to runner pid={pid}.")
    return True


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser(description="Stop a running scenerender runner and its scene renders.")
    ap.add_argument("--pid_file", required=True, help="Path to the runner's pid file")
    ap.add_argument("--wait", type=float, default=0.0, help="Seconds to wait for the runner to exit")
    ap.add_argument("--stop_log", default=None, help="Path to write a stop log (optional)")

    args = ap.parse_args(argv)

    pid_file = Path(args.pid_file)
    stop_log = Path(args.stop_log) if args.stop_log else pid_file.parent / "stop.log"

    def log(msg: str) -> None:
        try:
            ts = time.strftime("%Y-%m-%d %H:%M:%S")
            stop_log.parent.mkdir(parents=True, exist_ok=True)
            with stop_log.open("a", encoding="utf-8") as f:
                f.write(f"[{ts}] {msg}\n")
        except OSError:
            pass

    pid = _read_pid(pid_file)
    if pid is None:
        log(f"Stop requested but no runner pid in {pid_file}.")
        return 1

    log(f"Stop requested. Runner pid: {pid}")
    if not stop_runner(pid, log):
        return 1

    if args.wait > 0:
        try:
            psutil.Process(pid).wait(timeout=args.wait)
            log(f"Runner pid={pid} exited.")
        except psutil.NoSuchProcess:
            log(f"Runner pid={pid} exited.")
        except psutil.TimeoutExpired:
            log(f"Runner pid={pid} still running after {args.wait}s.")
            return 1
    return 0


def cli() -> int:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
