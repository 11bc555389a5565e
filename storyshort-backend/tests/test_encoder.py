# storyshort-backend/tests/test_encoder.py

import os

import ffmpeg
import pytest

import services
from config import FINAL_VIDEO_OPTIONS
from errors import EncoderError, RenderCancelled
from fakes import FakeProcess, FakeRunner, arg_value
from progress import FailureRecorder
from services import Compositor, FFmpegRunner, PreparedSubtitles, build_static_slideshow


def _stream(tmp_path):
    return ffmpeg.input(str(tmp_path / "in.mp4")).output(str(tmp_path / "out.mp4")).overwrite_output()


def test_nonzero_exit_writes_log_and_raises(tmp_path, monkeypatch):
    """
    A failing encode leaves a log with the arguments and stderr, and the
    raised error names both.
    """
    process = FakeProcess(returncode=1, stderr=b"Invalid data found when processing input\n")
    monkeypatch.setattr(services.ffmpeg, "run_async", lambda *a, **k: process)
    runner = FFmpegRunner(FailureRecorder(str(tmp_path / "logs")), poll_seconds=0.01)

    with pytest.raises(EncoderError) as exc:
        runner.run(_stream(tmp_path), "final-render")

    err = exc.value
    assert err.returncode == 1
    assert err.label == "final-render"
    assert os.path.basename(err.log_path).startswith("ffmpeg-error-")
    assert "| args: " in str(err)
    assert f"| error log: {err.log_path}" in str(err)
    with open(err.log_path, encoding="utf-8") as f:
        log = f.read()
    assert log.startswith("FFmpeg args: [")
    assert "Stage: final-render" in log
    assert "Invalid data found" in log
    assert "final-render" in err.user_message
    assert os.path.basename(err.log_path) in err.user_message


def test_missing_binary_becomes_encoder_error(tmp_path, monkeypatch):
    def boom(*args, **kwargs):
        raise FileNotFoundError("ffmpeg not found")

    monkeypatch.setattr(services.ffmpeg, "run_async", boom)
    runner = FFmpegRunner(FailureRecorder(str(tmp_path)))

    with pytest.raises(EncoderError) as exc:
        runner.run(_stream(tmp_path), "static-images")

    assert exc.value.returncode is None
    assert "ffmpeg not found" in str(exc.value)


def test_cancel_kills_running_encoder(tmp_path, monkeypatch):
    process = FakeProcess(hang_polls=10)
    monkeypatch.setattr(services.ffmpeg, "run_async", lambda *a, **k: process)
    runner = FFmpegRunner(FailureRecorder(str(tmp_path)), poll_seconds=0.01)

    with pytest.raises(RenderCancelled):
        runner.run(_stream(tmp_path), "final-render", cancel_check=lambda: True)

    assert process.killed


def test_successful_run_writes_no_log(tmp_path, monkeypatch):
    monkeypatch.setattr(services.ffmpeg, "run_async", lambda *a, **k: FakeProcess(returncode=0))
    runner = FFmpegRunner(FailureRecorder(str(tmp_path / "logs")))

    runner.run(_stream(tmp_path), "static-images")

    assert not os.path.exists(tmp_path / "logs")


@pytest.mark.parametrize("reported,expected", [("9.04", 9.04), ("N/A", 0.0), (None, 0.0)])
def test_probe_duration(tmp_path, monkeypatch, reported, expected):
    info = {"format": {"duration": reported}} if reported is not None else {"format": {}}
    monkeypatch.setattr(services.ffmpeg, "probe", lambda *a, **k: info)

    duration = FFmpegRunner(FailureRecorder(str(tmp_path))).probe_duration("audio.mp3")

    assert duration == pytest.approx(expected)


def test_probe_failure_is_logged(tmp_path, monkeypatch):
    def fail(*args, **kwargs):
        raise ffmpeg.Error("ffprobe", b"", b"audio.mp3: No such file or directory")

    monkeypatch.setattr(services.ffmpeg, "probe", fail)

    with pytest.raises(EncoderError) as exc:
        FFmpegRunner(FailureRecorder(str(tmp_path))).probe_duration("audio.mp3")

    assert exc.value.label == "ffprobe"
    with open(exc.value.log_path, encoding="utf-8") as f:
        assert "No such file or directory" in f.read()


def test_final_render_arguments(tmp_path):
    """
    The final mux burns captions via -vf, stops at the shorter stream and
    uses the fixed H.264/AAC settings.
    """
    slideshow = tmp_path / "slideshow.mp4"
    audio = tmp_path / "audio.mp3"
    slideshow.write_bytes(b"v")
    audio.write_bytes(b"a")
    subtitles = PreparedSubtitles(path=str(tmp_path / "captions.srt"), filter="subtitles='/tmp/x.srt':force_style='FontSize=20'")
    runner = FakeRunner(output_duration=9.02)

    duration = Compositor(runner, debug=False).compose(str(slideshow), str(audio), subtitles, str(tmp_path / "output.mp4"))

    assert duration == pytest.approx(9.02)
    args = runner.args_for("final-render")
    assert arg_value(args, "-vf") == subtitles.filter
    assert "-shortest" in args
    assert arg_value(args, "-movflags") == "+faststart"
    for key, value in FINAL_VIDEO_OPTIONS.items():
        assert arg_value(args, f"-{key}") == str(value)
    assert "-nostdin" in args
    assert "-report" not in args
    assert args[-1] == "-y"
    assert args.index(str(slideshow)) < args.index(str(audio)) < args.index(str(tmp_path / "output.mp4"))


def test_debug_adds_report_flag(tmp_path):
    compositor = Compositor(FakeRunner(), debug=True)
    stream = compositor.build_stream("s.mp4", "a.mp3", PreparedSubtitles("c.srt", "subtitles='c.srt'"), "o.mp4")
    assert "-report" in ffmpeg.compile(stream)


def test_static_slideshow_reads_concat_manifest(tmp_path):
    runner = FakeRunner()
    manifest = str(tmp_path / "images.txt")

    build_static_slideshow(runner, manifest, str(tmp_path / "slideshow.mp4"))

    args = runner.args_for("static-images")
    assert arg_value(args, "-f") == "concat"
    assert arg_value(args, "-safe") == "0"
    assert arg_value(args, "-i") == manifest
    assert arg_value(args, "-c:v") == "libx264"
    assert os.path.isfile(tmp_path / "slideshow.mp4")
