from pathlib import Path

import pytest

from scenerender.catalog import build_catalog, resolve_quality
from scenerender.errors import MergeFailure, MissingArtifactError
from scenerender.merge import (
    LOSSLESS,
    TRANSCODE,
    build_manifest,
    list_file_path,
    merge_scenes,
    partial_output_path,
    write_concat_list,
)
from scenerender.orchestrator import RunContext


SCENES = ["Intro", "AnalyzePattern", "FindSolution", "VerifyAnswer", "Summary"]


def _render_all(toolbox, names, quality="qh"):
    q = resolve_quality(quality)
    for name in names:
        out = toolbox.media_dir / "videos" / "lesson" / q.resolution_tag / f"{name}.mp4"
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(name, encoding="utf-8")


def _merge(toolbox, logger, ctx, fps=None, scenes=SCENES):
    return merge_scenes(
        ffmpeg_path=str(toolbox.ffmpeg),
        scenes=build_catalog(scenes),
        media_dir=toolbox.media_dir,
        script_path=toolbox.script,
        quality=resolve_quality("qh"),
        output_file=toolbox.output,
        ctx=ctx,
        log=logger,
        fps=fps,
    )


def test_manifest_is_in_index_order(tmp_path):
    scenes = list(reversed(build_catalog(SCENES)))
    manifest = build_manifest(scenes, tmp_path, "lesson.py", resolve_quality("ql"))

    assert len(manifest) == len(SCENES)
    assert [p.stem for p in manifest] == SCENES
    assert all(p.parent.name == "480p15" for p in manifest)


def test_concat_list_format(tmp_path):
    a = tmp_path / "a.mp4"
    b = tmp_path / "it's.mp4"
    list_file = write_concat_list(tmp_path / "sub" / "list.txt", [a, b])

    assert list_file.read_text(encoding="utf-8").splitlines() == [
        f"file '{a}'",
        f"file '{tmp_path}/it'\\''s.mp4'",
    ]


def test_missing_artifact_stops_before_ffmpeg(toolbox, logger):
    _render_all(toolbox, [s for s in SCENES if s != "VerifyAnswer"])
    ctx = RunContext()

    with pytest.raises(MissingArtifactError) as ei:
        _merge(toolbox, logger, ctx)

    assert ei.value.scene == "VerifyAnswer"
    assert ei.value.path.name == "VerifyAnswer.mp4"
    assert toolbox.ffmpeg_calls() == []
    assert not toolbox.output.exists()


def test_lossless_merge_only(toolbox, logger):
    _render_all(toolbox, SCENES)
    ctx = RunContext()

    result = _merge(toolbox, logger, ctx)

    assert result.mode == LOSSLESS
    calls = toolbox.ffmpeg_calls()
    assert len(calls) == 1
    assert calls[0][calls[0].index("-c") + 1] == "copy"
    assert ["-f", "concat", "-safe", "0"] == calls[0][2:6]
    assert toolbox.output.read_text(encoding="utf-8") == "+".join(SCENES)
    assert not partial_output_path(toolbox.output).exists()

    list_file = list_file_path(toolbox.media_dir, toolbox.script)
    assert list_file in ctx.temp_files
    assert len(list_file.read_text(encoding="utf-8").splitlines()) == len(SCENES)


def test_transcode_fallback_after_lossless_failure(toolbox, logger, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_COPY_FAIL", "1")
    _render_all(toolbox, SCENES)

    result = _merge(toolbox, logger, RunContext(), fps=30)

    assert result.mode == TRANSCODE
    first, second = toolbox.ffmpeg_calls()
    assert "copy" in first
    for flag, value in (("-c:v", "libx264"), ("-crf", "18"), ("-preset", "fast"), ("-pix_fmt", "yuv420p"), ("-r", "30")):
        assert second[second.index(flag) + 1] == value
    assert toolbox.output.exists()


def test_transcode_without_fps_has_no_rate_flag(toolbox, logger, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_COPY_FAIL", "1")
    _render_all(toolbox, SCENES)

    _merge(toolbox, logger, RunContext())

    assert "-r" not in toolbox.ffmpeg_calls()[1]


def test_both_attempts_fail(toolbox, logger, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_COPY_FAIL", "1")
    monkeypatch.setenv("FAKE_FFMPEG_TRANSCODE_FAIL", "1")
    _render_all(toolbox, SCENES)

    with pytest.raises(MergeFailure) as ei:
        _merge(toolbox, logger, RunContext())

    assert "Non-monotonous DTS" in ei.value.lossless_reason
    assert "libx264" in ei.value.transcode_reason
    assert len(toolbox.ffmpeg_calls()) == 2
    assert not toolbox.output.exists()
    assert not partial_output_path(toolbox.output).exists()


def test_existing_output_survives_failed_merge(toolbox, logger, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_COPY_FAIL", "1")
    monkeypatch.setenv("FAKE_FFMPEG_TRANSCODE_FAIL", "1")
    _render_all(toolbox, SCENES)
    toolbox.output.parent.mkdir(parents=True)
    toolbox.output.write_text("previous", encoding="utf-8")

    with pytest.raises(MergeFailure):
        _merge(toolbox, logger, RunContext())

    assert Path(toolbox.output).read_text(encoding="utf-8") == "previous"
