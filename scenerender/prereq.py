from __future__ import annotations

import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Tuple

from scenerender.errors import PrerequisiteError, ValidationError


DVISVGM_MIN_EXCLUSIVE: Tuple[int, int] = (2, 4)
VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")


def _from_env_or_path(env_key: str, exe: str) -> Optional[str]:
    """
    Order:
      1) $<env_key> (explicit path)
      2) <exe> on PATH
    """
    v = os.environ.get(env_key)
    if v:
        p = Path(v).expanduser()
        if p.exists():
            return str(p)
    return shutil.which(exe)


def find_ffmpeg() -> Optional[str]:
    return _from_env_or_path("FFMPEG", "ffmpeg")


def find_dvisvgm() -> Optional[str]:
    return _from_env_or_path("DVISVGM", "dvisvgm")


def resolve_render_executable(path: str, logger) -> str:
    p = Path(os.path.expandvars(os.path.expanduser(str(path).strip())))
    if not p.is_file() or not os.access(str(p), os.X_OK):
        raise ValidationError(f"manim executable missing or not executable: {p}")
    logger.info(f"Using manim executable: {p}")
    return str(p)


def parse_version(text: str) -> Optional[Tuple[int, int]]:
    """
    Pull the first "major.minor[.patch]" out of a version banner.
    Only major and minor take part in comparisons.
    """
    m = VERSION_RE.search(text or "")
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def check_dvisvgm_version(logger) -> Tuple[int, int]:
    exe = find_dvisvgm()
    if not exe:
        raise PrerequisiteError("dvisvgm is not installed or not on PATH (set $DVISVGM to override).")

    try:
        proc = subprocess.run(
            [exe, "--version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.SubprocessError) as ex:
        raise PrerequisiteError(f"Could not run {exe} --version: {ex}") from ex

    first_line = (proc.stdout or "").splitlines()[0] if proc.stdout else ""
    version = parse_version(first_line)
    if version is None:
        raise PrerequisiteError(f"Could not determine dvisvgm version from: {first_line!r}")

    required = ".".join(str(x) for x in DVISVGM_MIN_EXCLUSIVE)
    shown = ".".join(str(x) for x in version)
    if version <= DVISVGM_MIN_EXCLUSIVE:
        raise PrerequisiteError(f"dvisvgm version too old: {shown} (need > {required})")

    logger.info("dvisvgm version ok: %s (> %s)", shown, required)
    return version


def require_ffmpeg(logger) -> str:
    ffmpeg = find_ffmpeg()
    if not ffmpeg:
        raise PrerequisiteError("ffmpeg was not found. Install ffmpeg or set $FFMPEG to its path.")
    logger.info("Using ffmpeg: %s", ffmpeg)
    return ffmpeg
