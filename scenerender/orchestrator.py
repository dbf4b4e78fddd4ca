from __future__ import annotations

import argparse
import contextlib
import enum
import json
import logging
import os
import queue
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import psutil

from scenerender.catalog import (
    QualityLevel,
    Scene,
    build_catalog,
    resolve_quality,
    working_subdirs,
)
from scenerender.errors import (
    FailedScenesError,
    RenderFailure,
    RenderRunError,
    RunInterrupted,
    SpawnError,
    ValidationError,
)
from scenerender.merge import (
    build_lossless_cmd,
    build_transcode_cmd,
    list_file_path,
    merge_scenes,
    partial_output_path,
)
from scenerender.prereq import check_dvisvgm_version, require_ffmpeg, resolve_render_executable


TRUTHY = ("1", "true", "yes", "on")


# -----------------------------
# Types
# -----------------------------

class TaskState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunPhase(enum.Enum):
    LAUNCHING = "launching"
    WAITING = "waiting"
    ALL_SUCCEEDED = "all_succeeded"
    ANY_FAILED = "any_failed"
    ABORTED = "aborted"
    MERGING = "merging"
    MERGE_FAILED = "merge_failed"
    DONE = "done"


@dataclass
class SceneTask:
    scene: Scene
    cmd: List[str]
    popen: Optional[subprocess.Popen] = None
    psutil_proc: Optional[psutil.Process] = None
    state: TaskState = TaskState.PENDING
    returncode: Optional[int] = None
    start_time: float = 0.0
    end_time: Optional[float] = None
    termination_requests: int = 0

    @property
    def pid(self) -> Optional[int]:
        return self.popen.pid if self.popen else None

    def mark_running(self, popen: subprocess.Popen) -> None:
        self.popen = popen
        self.start_time = time.time()
        self.state = TaskState.RUNNING

    def finish(self, returncode: int) -> TaskState:
        if self.state is not TaskState.RUNNING:
            raise RuntimeError(f"Scene {self.scene.name} already finished ({self.state.value}).")
        self.returncode = returncode
        self.end_time = time.time()
        self.state = TaskState.SUCCEEDED if returncode == 0 else TaskState.FAILED
        return self.state


@dataclass
class RunContext:
    """Everything the run spawns or creates. Only the control thread touches it."""

    keep_temp: bool = False
    tasks: List[SceneTask] = field(default_factory=list)
    temp_files: List[Path] = field(default_factory=list)
    failed_scenes: List[str] = field(default_factory=list)
    phase: RunPhase = RunPhase.LAUNCHING
    pid_file: Optional[Path] = None
    deferring_signals: bool = False
    pending_signal: Optional[int] = None

    @contextlib.contextmanager
    def signals_deferred(self):
        """
        Hold SIGINT/SIGTERM while a child is spawned and registered. A signal
        that arrives inside the block is raised as RunInterrupted when it ends,
        by which point the child is in the registry for cleanup.
        """
        self.deferring_signals = True
        try:
            yield self
        finally:
            self.deferring_signals = False
            signum, self.pending_signal = self.pending_signal, None
        if signum is not None:
            raise RunInterrupted(signum)

    def register_task(self, task: SceneTask) -> None:
        self.tasks.append(task)

    def register_temp_file(self, path: Path) -> None:
        path = Path(path)
        if path not in self.temp_files:
            self.temp_files.append(path)

    def running_tasks(self) -> List[SceneTask]:
        return [t for t in self.tasks if t.state is TaskState.RUNNING]


# -----------------------------
# Helpers: logging & env
# -----------------------------

def setup_logging(log_file: Optional[str]) -> logging.Logger:
    logger = logging.getLogger("scenerender")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    # Clear handlers if re-run in same interpreter
    for h in list(logger.handlers):
        logger.removeHandler(h)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler: logging.Handler
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


def env_flag(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in TRUTHY


def load_env_overrides(env_file: Optional[str]) -> Dict[str, str]:
    if not env_file:
        return {}
    p = Path(env_file)
    if not p.exists():
        raise ValidationError(f"env file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as ex:
        raise ValidationError(f"env file is not valid JSON ({p}): {ex}") from ex
    if not isinstance(data, dict):
        raise ValidationError(f"env file must hold a JSON object: {p}")
    return {str(k): str(v) for k, v in data.items()}


def stream_reader(pid: int, stream, out_q: queue.Queue, tag: str):
    """Read lines from child stream and push to queue for the main loop to log."""
    try:
        for line in iter(stream.readline, ""):
            if not line:
                break
            out_q.put((pid, tag, line.rstrip("\n")))
    finally:
        try:
            stream.close()
        except OSError:
            pass


def drain_output(out_q: queue.Queue, logger: logging.Logger, last_output_time: Dict[int, float]) -> bool:
    drained = False
    try:
        while True:
            pid, tag, line = out_q.get_nowait()
            drained = True
            last_output_time[pid] = time.time()
            logger.info(f"[{pid} {tag}] {line}")
    except queue.Empty:
        pass
    return drained


# -----------------------------
# Process control
# -----------------------------

def _popen_kwargs_for_child() -> dict:
    """Platform-specific kwargs so one request reaches manim and the helpers it spawns."""
    if os.name == "nt":
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    # POSIX: own session, so the whole process group can be signalled and a
    # terminal Ctrl+C reaches only the orchestrator.
    return {"start_new_session": True}


def _request_termination(task: SceneTask, logger: logging.Logger) -> None:
    """Send exactly one termination request. There is no follow-up kill."""
    proc = task.popen
    if proc is None:
        return
    task.termination_requests += 1
    try:
        if os.name != "nt":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        logger.warning("Sent termination request to scene %s (pid=%s).", task.scene.name, proc.pid)
    except OSError as ex:
        # Already gone between poll() and the signal.
        logger.debug("Termination request for pid=%s not delivered: %s", proc.pid, ex)


class CleanupGuard:
    """
    Scoped teardown for one run.

    Entering installs SIGINT/SIGTERM handlers that raise RunInterrupted into the
    control thread, so every exit path (return, exception, signal) goes through
    __exit__ and fire(). fire() runs its teardown at most once:

      - one termination request per still-running task (no kill escalation, a
        child that ignores SIGTERM can outlive the run)
      - registered temp files are deleted unless the context keeps them

    The exception that ended the run is never replaced.
    """

    def __init__(self, ctx: RunContext, logger: logging.Logger, signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM)):
        self.ctx = ctx
        self.logger = logger
        self.fired = False
        self._signals = tuple(signals)
        self._previous: Dict[int, object] = {}

    def __enter__(self) -> "CleanupGuard":
        if threading.current_thread() is threading.main_thread():
            for signum in self._signals:
                self._previous[signum] = signal.signal(signum, self._on_signal)
        return self

    def _on_signal(self, signum, frame):
        if self.ctx.deferring_signals:
            self.ctx.pending_signal = signum
            return
        raise RunInterrupted(signum)

    def __exit__(self, exc_type, exc, tb) -> bool:
        # No second interruption in the middle of teardown.
        for signum in self._previous:
            signal.signal(signum, signal.SIG_IGN)
        try:
            if exc is not None:
                self.logger.warning("Cleaning up after %s: %s", exc_type.__name__, exc)
            self.fire()
        finally:
            for signum, handler in self._previous.items():
                signal.signal(signum, handler)
            self._previous.clear()
        return False

    def fire(self) -> bool:
        if self.fired:
            self.logger.debug("Cleanup already ran.")
            return False
        self.fired = True

        for task in self.ctx.running_tasks():
            if task.termination_requests or task.popen is None:
                continue
            if task.popen.poll() is not None:
                continue
            _request_termination(task, self.logger)

        # The pid file goes regardless of retention; a stale one could point
        # the stop tool at a reused pid.
        if self.ctx.pid_file is not None:
            try:
                self.ctx.pid_file.unlink()
            except FileNotFoundError:
                pass
            except OSError as ex:
                self.logger.warning("Could not remove pid file %s: %s", self.ctx.pid_file, ex)

        if self.ctx.keep_temp:
            if self.ctx.temp_files:
                self.logger.info("Keeping temp files: %s", ", ".join(str(p) for p in self.ctx.temp_files))
            return True

        for p in list(self.ctx.temp_files):
            try:
                if p.exists():
                    p.unlink()
                    self.logger.info("Removed temp file: %s", p)
            except OSError as ex:
                self.logger.warning("Could not remove temp file %s: %s", p, ex)
            self.ctx.temp_files.remove(p)
        return True


# -----------------------------
# Working directories
# -----------------------------

def ensure_media_dir(media_dir: Path, logger: logging.Logger) -> Path:
    if media_dir.is_dir():
        logger.info("Media directory already present: %s", media_dir)
        return media_dir
    logger.info("Media directory missing, creating: %s", media_dir)
    try:
        media_dir.mkdir(parents=True, exist_ok=True)
    except OSError as ex:
        raise ValidationError(f"Could not create media directory {media_dir}: {ex}") from ex
    return media_dir


def prepare_working_dirs(media_dir: Path, script_path: str, logger: logging.Logger) -> List[Path]:
    """Create manim's sub-folders before any render starts."""
    logger.info("Preparing manim working directories...")
    dirs = working_subdirs(media_dir, script_path)
    for d in dirs:
        if d.is_dir():
            logger.info("  already present: %s", d)
            continue
        logger.info("  creating: %s", d)
        try:
            d.mkdir(parents=True, exist_ok=True)
        except OSError as ex:
            raise ValidationError(f"Could not create directory {d}: {ex}") from ex
    return dirs


# -----------------------------
# Launch & wait
# -----------------------------

def build_render_cmd(
    manim_path: str,
    script_path: str,
    scene: Scene,
    quality: QualityLevel,
    media_dir: Path,
    fps: Optional[int] = None,
) -> List[str]:
    cmd: List[str] = [
        manim_path,
        script_path,
        scene.name,
        quality.flag,
        "--media_dir", str(media_dir),
    ]
    if fps:
        cmd += ["--fps", str(fps)]
    return cmd


def launch_scenes(
    ctx: RunContext,
    scenes: Sequence[Scene],
    cmd_for: Callable[[Scene], List[str]],
    logger: logging.Logger,
    out_q: queue.Queue,
    child_env: Optional[Dict[str, str]] = None,
    spawn_delay: float = 0.0,
) -> List[SceneTask]:
    """Start one render per scene in catalog order without waiting on any of them."""
    ctx.phase = RunPhase.LAUNCHING
    for i, scene in enumerate(sorted(scenes, key=lambda s: s.index)):
        if i > 0 and spawn_delay > 0:
            time.sleep(spawn_delay)

        task = SceneTask(scene=scene, cmd=cmd_for(scene))
        logger.info("Launching scene[%s] %s", scene.index, scene.name)
        logger.info("CMD: %s", " ".join(task.cmd))

        # A child must be in the registry before an interrupt can unwind the run.
        with ctx.signals_deferred():
            try:
                pop = subprocess.Popen(
                    task.cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    bufsize=1,
                    env=child_env,
                    **_popen_kwargs_for_child(),
                )
            except OSError as ex:
                raise SpawnError(scene.name, str(ex)) from ex

            task.mark_running(pop)
            ctx.register_task(task)
            try:
                task.psutil_proc = psutil.Process(pop.pid)
            except psutil.Error:
                task.psutil_proc = None

        # Emit a PID-bearing line so the stop tool and UIs can map scenes<->pids.
        logger.info("Launched scene[%s] pid=%s %s", scene.index, pop.pid, scene.name)

        if pop.stdout:
            threading.Thread(target=stream_reader, args=(pop.pid, pop.stdout, out_q, "STDOUT"), daemon=True).start()
        if pop.stderr:
            threading.Thread(target=stream_reader, args=(pop.pid, pop.stderr, out_q, "STDERR"), daemon=True).start()

    return list(ctx.tasks)


def _warn_silent(task: SceneTask, grace_sec: float, logger: logging.Logger) -> None:
    cpu = mem = "n/a"
    if task.psutil_proc is not None:
        try:
            cpu = f"{task.psutil_proc.cpu_percent(interval=0.0):.1f}%"
            mem = f"{task.psutil_proc.memory_info().rss / (1024**2):.1f}MB"
        except psutil.Error:
            pass
    logger.warning(
        "Scene %s (pid=%s) produced no output for %ss (cpu=%s, rss=%s).",
        task.scene.name, task.pid, grace_sec, cpu, mem,
    )


def wait_for_scenes(
    ctx: RunContext,
    logger: logging.Logger,
    out_q: Optional[queue.Queue] = None,
    child_grace_sec: float = 60.0,
    poll_sec: float = 0.2,
) -> List[SceneTask]:
    """
    Wait on every running task in launch order and classify it by exit status.

    A failure does not stop the loop: every scene is allowed to finish so the
    report lists all of them. Raises FailedScenesError when any scene failed.
    """
    ctx.phase = RunPhase.WAITING
    out_q = out_q if out_q is not None else queue.Queue()
    last_output_time: Dict[int, float] = {t.pid: t.start_time for t in ctx.tasks if t.pid}
    failures: List[RenderFailure] = []

    logger.info("Waiting for %s render(s) to finish...", len(ctx.running_tasks()))
    for task in list(ctx.tasks):
        if task.state is not TaskState.RUNNING:
            continue
        while True:
            drain_output(out_q, logger, last_output_time)
            try:
                rc = task.popen.wait(timeout=poll_sec)
                break
            except subprocess.TimeoutExpired:
                pass
            now = time.time()
            last = last_output_time.get(task.pid, task.start_time)
            if now - last > float(child_grace_sec):
                # warn once per interval
                last_output_time[task.pid] = now
                _warn_silent(task, child_grace_sec, logger)

        drain_output(out_q, logger, last_output_time)
        state = task.finish(rc)
        elapsed = (task.end_time or 0.0) - task.start_time
        if state is TaskState.SUCCEEDED:
            logger.info("Scene %s rendered in %.1fs.", task.scene.name, elapsed)
        else:
            logger.error("Scene %s failed with rc=%s after %.1fs.", task.scene.name, rc, elapsed)
            ctx.failed_scenes.append(task.scene.name)
            failures.append(RenderFailure(task.scene.name, rc))

    if failures:
        ctx.phase = RunPhase.ANY_FAILED
        logger.error("%s scene(s) failed: %s", len(failures), " ".join(f.scene for f in failures))
        ctx.phase = RunPhase.ABORTED
        raise FailedScenesError(failures)

    ctx.phase = RunPhase.ALL_SUCCEEDED
    logger.info("All scenes rendered successfully.")
    return list(ctx.tasks)


# -----------------------------
# Entry
# -----------------------------

def parse_fps(value) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        fps = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"Frame rate must be an integer: {value}") from None
    if fps <= 0:
        raise ValidationError(f"Frame rate must be positive: {value}")
    return fps


def _write_pid_file(pid_file: str, ctx: RunContext, logger: logging.Logger) -> None:
    p = Path(pid_file)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(str(os.getpid()), encoding="utf-8")
    except OSError as ex:
        logger.warning("Could not write pid file %s: %s", p, ex)
        return
    ctx.pid_file = p


def _run(args: argparse.Namespace, ctx: RunContext, logger: logging.Logger) -> int:
    run_started = time.time()

    # Validation
    manim_path = resolve_render_executable(args.manim, logger)
    script_path = Path(args.script)
    if not script_path.is_file():
        raise ValidationError(f"Script not found: {script_path}")
    script = str(script_path)
    quality = resolve_quality(args.quality)
    fps = parse_fps(args.fps)
    scenes = build_catalog(args.scenes)
    media_dir = Path(args.media_dir).absolute()
    output_file = Path(args.output).absolute()
    child_env = dict(os.environ)
    child_env.update(load_env_overrides(getattr(args, "env_file", None)))

    logger.info(
        "Rendering %s scene(s) concurrently (quality=%s, fps=%s, keep_temp=%s)",
        len(scenes), quality.key, fps or "default", ctx.keep_temp,
    )

    def cmd_for(scene: Scene) -> List[str]:
        return build_render_cmd(manim_path, script, scene, quality, media_dir, fps)

    if args.dry_run:
        list_file = list_file_path(media_dir, script)
        partial = partial_output_path(output_file)
        for scene in scenes:
            logger.info("DRY RUN scene[%s]: %s", scene.index, " ".join(cmd_for(scene)))
        logger.info("DRY RUN merge: %s", " ".join(build_lossless_cmd("ffmpeg", list_file, partial)))
        logger.info("DRY RUN fallback: %s", " ".join(build_transcode_cmd("ffmpeg", list_file, partial, fps)))
        return 0

    ensure_media_dir(media_dir, logger)
    prepare_working_dirs(media_dir, script, logger)
    check_dvisvgm_version(logger)
    ffmpeg_path = require_ffmpeg(logger)

    if getattr(args, "pid_file", None):
        _write_pid_file(args.pid_file, ctx, logger)

    out_q: queue.Queue = queue.Queue()
    render_started = time.time()
    launch_scenes(ctx, scenes, cmd_for, logger, out_q, child_env=child_env, spawn_delay=float(args.spawn_delay or 0.0))
    wait_for_scenes(ctx, logger, out_q, child_grace_sec=float(args.child_grace_sec))
    logger.info("Render phase finished in %.1fs.", time.time() - render_started)

    ctx.phase = RunPhase.MERGING
    try:
        merge_scenes(
            ffmpeg_path=ffmpeg_path,
            scenes=scenes,
            media_dir=media_dir,
            script_path=script,
            quality=quality,
            output_file=output_file,
            ctx=ctx,
            log=logger,
            fps=fps,
        )
    except RenderRunError:
        ctx.phase = RunPhase.MERGE_FAILED
        raise
    ctx.phase = RunPhase.DONE

    logger.info("Output file: %s", output_file)
    logger.info("All done in %.1fs.", time.time() - run_started)
    return 0


def run_orchestrator(args: argparse.Namespace, logger: logging.Logger) -> int:
    keep_temp = bool(getattr(args, "keep_temp", False)) or env_flag("KEEP_TEMP")
    ctx = RunContext(keep_temp=keep_temp)

    try:
        with CleanupGuard(ctx, logger):
            rc = _run(args, ctx, logger)
    except FailedScenesError as ex:
        for f in ex.failures:
            logger.error("  failed: %s (rc=%s)", f.scene, f.returncode)
        logger.error("%s", ex)
        rc = ex.exit_code
    except RenderRunError as ex:
        logger.error("%s", ex)
        rc = ex.exit_code
    except RunInterrupted as ex:
        logger.warning("%s. Running renders were asked to stop.", ex)
        rc = ex.exit_code
    except KeyboardInterrupt:
        logger.warning("Interrupted. Running renders were asked to stop.")
        rc = 130

    logger.info("Run complete rc=%s", rc)
    return rc
