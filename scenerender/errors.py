from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


class RenderRunError(Exception):
    """Base class for every fatal condition of a run. All of them exit with 1."""

    exit_code = 1


class ValidationError(RenderRunError):
    pass


class PrerequisiteError(RenderRunError):
    pass


class SpawnError(RenderRunError):
    def __init__(self, scene: str, reason: str):
        super().__init__(f"Failed to launch scene {scene}: {reason}")
        self.scene = scene
        self.reason = reason


@dataclass(frozen=True)
class RenderFailure:
    scene: str
    returncode: Optional[int]


class FailedScenesError(RenderRunError):
    def __init__(self, failures: List[RenderFailure]):
        self.failures = list(failures)
        names = ", ".join(self.scene_names)
        super().__init__(f"{len(self.failures)} scene(s) failed to render: {names}")

    @property
    def scene_names(self) -> List[str]:
        return [f.scene for f in self.failures]


class MissingArtifactError(RenderRunError):
    def __init__(self, scene: str, path: Path):
        super().__init__(f"Rendered file for scene {scene} not found: {path}")
        self.scene = scene
        self.path = path


class MergeFailure(RenderRunError):
    def __init__(self, lossless_reason: str, transcode_reason: str):
        super().__init__(
            "Both merge attempts failed. "
            f"lossless: {lossless_reason}; transcode: {transcode_reason}"
        )
        self.lossless_reason = lossless_reason
        self.transcode_reason = transcode_reason


class RunInterrupted(Exception):
    """Raised into the control thread when SIGINT/SIGTERM arrives."""

    def __init__(self, signum: int):
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum

    @property
    def exit_code(self) -> int:
        return 128 + int(self.signum)
