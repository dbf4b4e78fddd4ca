from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from scenerender.catalog import QualityLevel, Scene, artifact_path, script_basename
from scenerender.errors import MergeFailure, MissingArtifactError


# Re-encode fallback parameters.
TRANSCODE_VCODEC = ["-c:v", "libx264", "-crf", "18", "-preset", "fast", "-pix_fmt", "yuv420p"]

LOSSLESS = "lossless"
TRANSCODE = "transcode"


@dataclass
class MergeResult:
    mode: str
    output: Path
    duration: float


def build_manifest(
    scenes: Sequence[Scene],
    media_dir: Path,
    script_path: str | Path,
    quality: QualityLevel,
) -> List[Path]:
    """One absolute artifact path per scene, in Scene.index order."""
    ordered = sorted(scenes, key=lambda s: s.index)
    return [artifact_path(media_dir, script_path, quality, s) for s in ordered]


def verify_manifest(scenes: Sequence[Scene], manifest: Sequence[Path]) -> None:
    ordered = sorted(scenes, key=lambda s: s.index)
    for scene, path in zip(ordered, manifest):
        if not path.is_file():
            raise MissingArtifactError(scene.name, path)


def list_file_path(media_dir: Path, script_path: str | Path) -> Path:
    return Path(media_dir) / "videos" / script_basename(script_path) / "list.txt"


def partial_output_path(output_file: Path) -> Path:
    # Same directory so the final rename stays on one filesystem; keep the
    # suffix so ffmpeg can pick the muxer.
    return output_file.with_name(f".{output_file.stem}.partial{output_file.suffix}")


def _ffconcat_escape_path(p: Path) -> str:
    # concat demuxer list syntax uses single quotes; escape single quotes if present.
    s = str(p)
    return s.replace("'", "'\\''")


def write_concat_list(list_file: Path, manifest: Sequence[Path]) -> Path:
    list_file.parent.mkdir(parents=True, exist_ok=True)
    with open(list_file, "w", encoding="utf-8") as f:
        for seg in manifest:
            f.write(f"file '{_ffconcat_escape_path(Path(seg).absolute())}'\n")
    return list_file


def build_lossless_cmd(ffmpeg_path: str, list_file: Path, output_file: Path) -> List[str]:
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(list_file),
        "-c",
        "copy",
    ]
    # Faststart helps for mov/mp4.
    if output_file.suffix.lower() in (".mov", ".mp4"):
        cmd += ["-movflags", "+faststart"]
    return cmd + [str(output_file)]


def build_transcode_cmd(
    ffmpeg_path: str,
    list_file: Path,
    output_file: Path,
    fps: Optional[int] = None,
) -> List[str]:
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(list_file),
    ] + TRANSCODE_VCODEC
    if fps:
        cmd += ["-r", str(fps)]
    if output_file.suffix.lower() in (".mov", ".mp4"):
        cmd += ["-movflags", "+faststart"]
    return cmd + [str(output_file)]


def _tail(out: str, lines: int = 5) -> str:
    kept = [ln for ln in (out or "").splitlines() if ln.strip()][-lines:]
    return " | ".join(kept) if kept else "no output"


def _run(cmd: List[str], log: logging.Logger) -> Tuple[bool, str]:
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError as e:
        log.error("ffmpeg invocation error: %s", e)
        return False, str(e)

    out = proc.stdout or ""
    if proc.returncode == 0 and not Path(cmd[-1]).is_file():
        log.warning("ffmpeg exited 0 but wrote no file: %s", cmd[-1])
        return False, "rc=0 but no output file was written"
    if proc.returncode != 0:
        log.warning("ffmpeg failed (rc=%s). Output:\n%s", proc.returncode, out)
        return False, f"rc={proc.returncode}: {_tail(out)}"
    log.debug("ffmpeg ok. Output:\n%s", out)
    return True, ""


def _discard(p: Path) -> None:
    try:
        p.unlink()
    except FileNotFoundError:
        pass


def merge_scenes(
    *,
    ffmpeg_path: str,
    scenes: Sequence[Scene],
    media_dir: Path,
    script_path: str | Path,
    quality: QualityLevel,
    output_file: Path,
    ctx,
    log: logging.Logger,
    fps: Optional[int] = None,
) -> MergeResult:
    """Concatenate the per-scene renders into output_file.

    - Every scene's file must exist before ffmpeg is touched.
    - Stream copy is tried first (fast, no quality loss).
    - Only if it fails, the list is re-encoded with libx264/crf 18/fast/yuv420p.

    ffmpeg writes to a hidden partial file beside the output which is moved into
    place only after a successful attempt.
    """
    started = time.time()

    manifest = build_manifest(scenes, media_dir, script_path, quality)
    verify_manifest(scenes, manifest)

    list_file = list_file_path(media_dir, script_path)
    ctx.register_temp_file(list_file)
    log.info("Writing merge list (%d entries): %s", len(manifest), list_file)
    write_concat_list(list_file, manifest)

    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    partial = partial_output_path(output_file)
    ctx.register_temp_file(partial)

    # 1) stream copy
    copy_cmd = build_lossless_cmd(ffmpeg_path, list_file, partial)
    log.info("ffmpeg concat (stream-copy): %s", " ".join(copy_cmd))
    ok, lossless_reason = _run(copy_cmd, log)
    mode = LOSSLESS

    # 2) re-encode fallback
    transcode_reason = ""
    if not ok:
        log.warning("Lossless merge failed, falling back to re-encode...")
        _discard(partial)
        reenc_cmd = build_transcode_cmd(ffmpeg_path, list_file, partial, fps)
        log.info("ffmpeg concat (re-encode): %s", " ".join(reenc_cmd))
        ok, transcode_reason = _run(reenc_cmd, log)
        mode = TRANSCODE

    if not ok:
        _discard(partial)
        raise MergeFailure(lossless_reason, transcode_reason)

    os.replace(str(partial), str(output_file))
    duration = time.time() - started
    log.info("Merge ok (%s) in %.1fs -> %s", mode, duration, output_file)
    return MergeResult(mode=mode, output=output_file, duration=duration)
