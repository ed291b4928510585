# tests/test_infra.py

import subprocess
import sys
from pathlib import Path

import psutil
import pytest

from vidq.core.errors import ResolutionError, TrimError
from vidq.infra.deps import PathDependencyResolver
from vidq.infra.media.ffmpeg import MediaToolkit
from vidq.infra.process import terminate_process_tree

from fakes import FakeResolver


def make_executable(path: Path, body: str = "#!/bin/sh\nexit 0\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    path.chmod(0o755)
    return path


@pytest.mark.skipif(sys.platform == "win32", reason="uses shell scripts as fake executables")
class TestResolver:
    def test_config_override_wins(self, tmp_path: Path, config) -> None:
        exe = make_executable(tmp_path / "custom" / "my-ytdlp")
        make_executable(tmp_path / "bin" / "yt-dlp")
        config.set("ytdlp_path", str(exe))
        resolver = PathDependencyResolver(config, bin_dir=tmp_path / "bin")
        assert resolver.resolve_downloader_path() == str(exe.resolve())

    def test_bin_dir_before_path(self, tmp_path: Path, config, monkeypatch) -> None:
        bundled = make_executable(tmp_path / "bin" / "ffmpeg")
        make_executable(tmp_path / "sys" / "ffmpeg")
        monkeypatch.setenv("PATH", str(tmp_path / "sys"))
        resolver = PathDependencyResolver(config, bin_dir=tmp_path / "bin")
        assert resolver.resolve_media_toolkit_path() == str(bundled.resolve())

    def test_bad_override_falls_back_to_path(self, tmp_path: Path, config, monkeypatch) -> None:
        on_path = make_executable(tmp_path / "sys" / "yt-dlp")
        monkeypatch.setenv("PATH", str(tmp_path / "sys"))
        config.set("ytdlp_path", str(tmp_path / "missing"))
        assert PathDependencyResolver(config).resolve_downloader_path() == str(on_path.resolve())

    def test_missing_everywhere(self, tmp_path: Path, config, monkeypatch) -> None:
        monkeypatch.setenv("PATH", str(tmp_path / "empty"))
        with pytest.raises(ResolutionError, match="ffmpeg"):
            PathDependencyResolver(config, bin_dir=tmp_path / "bin").resolve_media_toolkit_path()


FAKE_FFMPEG = """#!/bin/sh
for last; do :; done
if [ "$1" = "-hide_banner" ]; then
  echo "Input #0, mov,mp4,m4a,3gp,3g2,mj2, from '$3':" >&2
  echo "  Duration: 00:01:05.50, start: 0.000000, bitrate: 1000 kb/s" >&2
  exit 1
fi
case "$*" in
  *fail*) echo "Invalid argument" >&2; exit 1 ;;
  *empty*) : > "$last"; exit 0 ;;
esac
printf 'clip' > "$last"
"""


@pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as a fake ffmpeg")
class TestMediaToolkit:
    @pytest.fixture()
    def toolkit(self, tmp_path: Path) -> MediaToolkit:
        exe = make_executable(tmp_path / "ffmpeg", FAKE_FFMPEG)
        return MediaToolkit(FakeResolver(toolkit=str(exe)))

    def test_probe_duration(self, toolkit: MediaToolkit, tmp_path: Path) -> None:
        assert toolkit.probe_duration(tmp_path / "in.mp4") == pytest.approx(65.5)

    def test_extract_clip(self, toolkit: MediaToolkit, tmp_path: Path) -> None:
        target = tmp_path / "out.mp4"
        toolkit.extract_clip(tmp_path / "in.mp4", "00:01", "", target)
        assert target.read_bytes() == b"clip"

    def test_nonzero_exit(self, toolkit: MediaToolkit, tmp_path: Path) -> None:
        with pytest.raises(TrimError, match="Invalid argument"):
            toolkit.extract_clip(tmp_path / "in.mp4", "00:01", "00:02", tmp_path / "fail.mp4")

    def test_empty_output(self, toolkit: MediaToolkit, tmp_path: Path) -> None:
        with pytest.raises(TrimError, match="empty"):
            toolkit.extract_clip(tmp_path / "in.mp4", "", "00:02", tmp_path / "empty.mp4")

    def test_missing_binary(self, tmp_path: Path) -> None:
        with pytest.raises(TrimError):
            MediaToolkit(FakeResolver(toolkit=None)).probe_duration(tmp_path / "in.mp4")


def test_terminate_process_tree_kills_children() -> None:
    script = (
        "import subprocess, sys, time\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print(child.pid, flush=True)\n"
        "time.sleep(60)\n"
    )
    proc = subprocess.Popen([sys.executable, "-c", script], stdout=subprocess.PIPE, text=True)
    child_pid = int(proc.stdout.readline())

    terminate_process_tree(proc, timeout=5)

    assert proc.wait(timeout=5) is not None
    try:
        assert psutil.Process(child_pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        pass
    proc.stdout.close()


def test_terminate_finished_process_is_a_no_op() -> None:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    terminate_process_tree(proc)
    assert proc.returncode == 0
