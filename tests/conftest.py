"""
Pytest configuration and fixtures.

The fixtures write small stand-in executables for manim, ffmpeg and dvisvgm so
the orchestrator drives real child processes.
"""

import json
import logging
import os
import stat
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add repo root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


FAKE_MANIM = r'''#!{python}
import os
import signal
import sys
import time
from pathlib import Path

argv = sys.argv[1:]
script, scene, qflag = argv[0], argv[1], argv[2]

term_dir = os.environ.get("FAKE_MANIM_TERM_DIR")
if term_dir:
    def _on_term(signum, frame):
        with open(os.path.join(term_dir, scene + ".term"), "a", encoding="utf-8") as f:
            f.write("SIGTERM\n")
        sys.exit(128 + signum)
    signal.signal(signal.SIGTERM, _on_term)
media = Path(argv[argv.index("--media_dir") + 1])
res = {{"-ql": "480p15", "-qm": "720p30", "-qh": "1080p60", "-qk": "2160p60"}}[qflag]

log = os.environ.get("FAKE_MANIM_LOG")
if log:
    with open(log, "a", encoding="utf-8") as f:
        f.write(" ".join(argv) + "\n")

def _names(key):
    return [s for s in os.environ.get(key, "").split(",") if s]

delays = dict(item.split(":") for item in _names("FAKE_MANIM_DELAY"))
if scene in delays:
    time.sleep(float(delays[scene]))
if scene in _names("FAKE_MANIM_SLOW"):
    time.sleep(60)

print(f"rendering {{scene}}", flush=True)
if scene in _names("FAKE_MANIM_FAIL"):
    print(f"{{scene}} exploded", file=sys.stderr, flush=True)
    sys.exit(2)

if scene not in _names("FAKE_MANIM_NO_FILE"):
    out = media / "videos" / Path(script).stem / res / f"{{scene}}.mp4"
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(scene, encoding="utf-8")
'''

FAKE_FFMPEG = r'''#!{python}
import json
import os
import sys
from pathlib import Path

argv = sys.argv[1:]
log = os.environ.get("FAKE_FFMPEG_LOG")
if log:
    with open(log, "a", encoding="utf-8") as f:
        f.write(json.dumps(argv) + "\n")

copy = "-c" in argv and argv[argv.index("-c") + 1] == "copy"
if copy and os.environ.get("FAKE_FFMPEG_COPY_FAIL"):
    print("Non-monotonous DTS in output stream", file=sys.stderr)
    sys.exit(1)
if not copy and os.environ.get("FAKE_FFMPEG_TRANSCODE_FAIL"):
    print("Unknown encoder 'libx264'", file=sys.stderr)
    sys.exit(1)

list_file = Path(argv[argv.index("-i") + 1])
parts = []
for line in list_file.read_text(encoding="utf-8").splitlines():
    path = line[len("file '"):-1].replace("'\\''", "'")
    parts.append(Path(path).read_text(encoding="utf-8"))
Path(argv[-1]).write_text("+".join(parts), encoding="utf-8")
'''

FAKE_DVISVGM = r'''#!{python}
import os
print("dvisvgm " + os.environ.get("FAKE_DVISVGM_VERSION", "3.1.2"))
'''


def write_executable(path: Path, source: str) -> Path:
    path.write_text(source.format(python=sys.executable), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def read_ffmpeg_calls(log_path: Path):
    if not log_path.exists():
        return []
    return [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines() if line]


@pytest.fixture
def logger():
    log = logging.getLogger("scenerender-tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def toolbox(tmp_path, monkeypatch):
    """Fake manim/ffmpeg/dvisvgm wired through PATH and env vars."""
    if os.name == "nt":
        pytest.skip("fake executables rely on POSIX shebangs")

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    manim = write_executable(bin_dir / "manim", FAKE_MANIM)
    ffmpeg = write_executable(bin_dir / "ffmpeg", FAKE_FFMPEG)
    dvisvgm = write_executable(bin_dir / "dvisvgm", FAKE_DVISVGM)

    script = tmp_path / "lesson.py"
    script.write_text("# scenes live here\n", encoding="utf-8")

    manim_log = tmp_path / "manim_calls.log"
    ffmpeg_log = tmp_path / "ffmpeg_calls.log"

    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("FFMPEG", str(ffmpeg))
    monkeypatch.setenv("DVISVGM", str(dvisvgm))
    monkeypatch.setenv("FAKE_MANIM_LOG", str(manim_log))
    monkeypatch.setenv("FAKE_FFMPEG_LOG", str(ffmpeg_log))
    for key in (
        "KEEP_TEMP",
        "FAKE_MANIM_FAIL",
        "FAKE_MANIM_SLOW",
        "FAKE_MANIM_DELAY",
        "FAKE_MANIM_NO_FILE",
        "FAKE_MANIM_TERM_DIR",
        "FAKE_FFMPEG_COPY_FAIL",
        "FAKE_FFMPEG_TRANSCODE_FAIL",
        "FAKE_DVISVGM_VERSION",
    ):
        monkeypatch.delenv(key, raising=False)

    return SimpleNamespace(
        bin_dir=bin_dir,
        manim=manim,
        ffmpeg=ffmpeg,
        dvisvgm=dvisvgm,
        script=script,
        media_dir=tmp_path / "media",
        output=tmp_path / "out" / "final.mp4",
        manim_log=manim_log,
        ffmpeg_log=ffmpeg_log,
        ffmpeg_calls=lambda: read_ffmpeg_calls(ffmpeg_log),
    )
