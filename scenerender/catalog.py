from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from scenerender.errors import ValidationError


DEFAULT_SCENES = ("Intro", "AnalyzePattern", "FindSolution", "VerifyAnswer", "Summary")
MEDIA_EXT = ".mp4"


@dataclass(frozen=True)
class Scene:
    name: str
    index: int


@dataclass(frozen=True)
class QualityLevel:
    key: str
    flag: str
    resolution_tag: str


QUALITY_LEVELS: Dict[str, QualityLevel] = {
    "ql": QualityLevel("ql", "-ql", "480p15"),
    "qm": QualityLevel("qm", "-qm", "720p30"),
    "qh": QualityLevel("qh", "-qh", "1080p60"),
    "qk": QualityLevel("qk", "-qk", "2160p60"),
}


def resolve_quality(key: str) -> QualityLevel:
    q = QUALITY_LEVELS.get(key)
    if q is None:
        raise ValidationError(
            f"Unknown quality level: {key} (supported: {'|'.join(QUALITY_LEVELS)})"
        )
    return q


def build_catalog(names: Optional[Iterable[str]] = None) -> List[Scene]:
    """
    Build the ordered scene list. The position of a name is its index, which
    fixes both launch order and merge order for the rest of the run.
    """
    raw = list(names) if names else list(DEFAULT_SCENES)
    scenes: List[Scene] = []
    seen = set()
    for i, name in enumerate(raw):
        name = str(name).strip()
        if not name:
            raise ValidationError("Scene names must not be empty.")
        if name in seen:
            raise ValidationError(f"Duplicate scene name: {name}")
        seen.add(name)
        scenes.append(Scene(name=name, index=i))
    return scenes


def script_basename(script_path: str | Path) -> str:
    return Path(script_path).stem


def scene_video_dir(media_dir: Path, script_path: str | Path, quality: QualityLevel) -> Path:
    # manim layout: <media_dir>/videos/<script stem>/<resolution tag>/
    return Path(media_dir) / "videos" / script_basename(script_path) / quality.resolution_tag


def artifact_path(media_dir: Path, script_path: str | Path, quality: QualityLevel, scene: Scene) -> Path:
    return (scene_video_dir(media_dir, script_path, quality) / f"{scene.name}{MEDIA_EXT}").absolute()


def working_subdirs(media_dir: Path, script_path: str | Path) -> List[Path]:
    """Sub-folders manim creates on first use; made up front so concurrent renders don't race."""
    base = script_basename(script_path)
    media_dir = Path(media_dir)
    return [
        media_dir / "images" / base,
        media_dir / "Tex",
        media_dir / "texts",
        media_dir / "videos" / base,
    ]
