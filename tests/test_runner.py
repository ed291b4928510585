# tests/test_runner.py

import time
from pathlib import Path

import pytest

from vidq.app.arguments import DEFAULT_SELECTOR
from vidq.core.entities import AddPlaylistTaskInput, AddTaskInput, PlaylistItem, TaskStatus, TrimMode
from vidq.core.errors import MetadataError, TaskBusyError
from vidq.core.interfaces import FormatChoice, MediaInfo, TaskObserver

from fakes import (
    FailingPopenFactory, FakeMediaToolkit, FakeMetadataFetcher, FakePopenFactory, FakeResolver,
    RecordingObserver, ScriptedProcess, wait_for,
)

TERMINAL = (TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.TRIM_FAILED, TaskStatus.PAUSED)


def finished(manager, task_id: str, timeout: float = 15.0):
    assert wait_for(lambda: manager.get(task_id).status in TERMINAL, timeout=timeout)
    assert manager.wait_idle(timeout=timeout)
    return manager.get(task_id)


def transcript(name: str = "v.mp4"):
    return [
        ("out", f"[download] Destination: {name}"),
        ("out", "[download]  50.0% of 1.00KiB at 1.00KiB/s ETA 00:01"),
        ("err", "WARNING: something on stderr"),
        ("out", "[download] 100% of 1.00KiB in 00:00:01"),
    ]


@pytest.fixture()
def video(download_dir: Path) -> Path:
    path = download_dir / "v.mp4"
    path.write_bytes(b"\0" * 1024)
    return path


def test_successful_download(make_manager, sink, download_dir: Path, video: Path) -> None:
    popen = FakePopenFactory(ScriptedProcess(transcript()))
    manager = make_manager(popen_factory=popen)
    observer = RecordingObserver()
    manager.subscribe(observer)

    task_id = manager.create(AddTaskInput(url="https://example.com/v"))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.COMPLETED
    assert task.progress == 100.0
    assert task.file_path == str(video)
    assert task.file_exists
    assert task.files[0].size_bytes == 1024
    assert observer.completed == [task_id]

    cmd = popen.commands[0]
    assert cmd[0] == "/opt/bin/yt-dlp"
    assert cmd[cmd.index("-P") + 1] == str(download_dir)
    assert cmd[cmd.index("-f") + 1] == DEFAULT_SELECTOR
    assert cmd[-1] == "https://example.com/v"

    statuses = sink.statuses(task_id)
    assert TaskStatus.DOWNLOADING in statuses
    assert statuses[-1] == TaskStatus.COMPLETED

    logs = "\n".join(manager.get_task_logs(task_id))
    assert "Starting download engine..." in logs
    assert "WARNING: something on stderr" in logs
    assert "Download completed" in logs
    assert "50.0%" not in logs


def test_limit_sentinel_counts_as_success(make_manager, video: Path) -> None:
    manager = make_manager(popen_factory=FakePopenFactory(ScriptedProcess(transcript(), exit_code=101)))
    task_id = manager.create(AddTaskInput(url="u"))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.COMPLETED
    assert any("limit reached" in line for line in manager.get_task_logs(task_id))


def test_nonzero_exit_fails(make_manager) -> None:
    manager = make_manager(popen_factory=FakePopenFactory(ScriptedProcess([("err", "ERROR: Unsupported URL")], exit_code=1)))
    observer = RecordingObserver()
    manager.subscribe(observer)

    task_id = manager.create(AddTaskInput(url="u"))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.ERROR
    assert task.error_message == "Exit Error: exit status 1"
    assert observer.failed == [task_id]
    assert "ERROR: Unsupported URL" in "\n".join(manager.get_task_logs(task_id))


def test_missing_executable_fails_without_spawning(make_manager) -> None:
    popen = FakePopenFactory()
    manager = make_manager(popen_factory=popen, resolver=FakeResolver(toolkit=None))
    task_id = manager.create(AddTaskInput(url="u"))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.ERROR
    assert "ffmpeg not found" in task.error_message
    assert popen.commands == []


def test_launch_failure(make_manager) -> None:
    manager = make_manager(popen_factory=FailingPopenFactory())
    task_id = manager.create(AddTaskInput(url="u"))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.ERROR
    assert task.error_message.startswith("Start Error:")


def test_pause_kills_the_process(make_manager, sink) -> None:
    popen = FakePopenFactory(ScriptedProcess(transcript(), hold=30))
    manager = make_manager(popen_factory=popen)
    task_id = manager.create(AddTaskInput(url="u"))
    assert wait_for(lambda: manager.get(task_id).status == TaskStatus.DOWNLOADING)

    assert manager.pause(task_id) is True
    assert wait_for(lambda: popen.procs[0].poll() is not None)
    assert manager.wait_idle(timeout=10)

    assert manager.get(task_id).status == TaskStatus.PAUSED
    assert TaskStatus.ERROR not in sink.statuses(task_id)


def test_resume_after_pause_runs_again(make_manager, video: Path) -> None:
    popen = FakePopenFactory(ScriptedProcess(transcript(), hold=30), ScriptedProcess(transcript()))
    manager = make_manager(popen_factory=popen)
    task_id = manager.create(AddTaskInput(url="u"))
    assert wait_for(lambda: manager.get(task_id).status == TaskStatus.DOWNLOADING)
    manager.pause(task_id)
    assert manager.wait_idle(timeout=10)

    assert manager.resume(task_id) is True
    task = finished(manager, task_id)
    assert task.status == TaskStatus.COMPLETED
    assert len(popen.commands) == 2


def test_delete_while_downloading(make_manager, sink, repo) -> None:
    popen = FakePopenFactory(ScriptedProcess(transcript(), hold=30))
    manager = make_manager(popen_factory=popen)
    task_id = manager.create(AddTaskInput(url="u"))
    assert wait_for(lambda: manager.get(task_id).status == TaskStatus.DOWNLOADING)

    manager.delete(task_id)
    assert wait_for(lambda: popen.procs[0].poll() is not None)
    assert manager.wait_idle(timeout=10)

    assert manager.list() == []
    assert repo.get(task_id) is None
    assert TaskStatus.ERROR not in sink.statuses(task_id)
    assert not manager.is_deleted(task_id)


def test_concurrency_ceiling_is_respected(make_manager, config) -> None:
    config.set("concurrency_limit", 2)
    popen = FakePopenFactory(ScriptedProcess(hold=0.3))
    manager = make_manager(popen_factory=popen)
    ids = [manager.create(AddTaskInput(url=f"https://example.com/{i}")) for i in range(5)]

    peak = 0

    def all_done() -> bool:
        nonlocal peak
        tasks = manager.list()
        peak = max(peak, sum(1 for t in tasks if t.is_active))
        return all(t.status == TaskStatus.COMPLETED for t in tasks)

    assert wait_for(all_done, timeout=30, interval=0.01)
    assert peak <= 2
    assert len(popen.commands) == len(ids)


def test_preflight_selects_best_format(make_manager, video: Path) -> None:
    info = MediaInfo(
        title="Real Title",
        thumbnail="https://img.example/t.jpg",
        formats=[FormatChoice("1080p", "137+140", video_bytes=1000, audio_bytes=24)],
    )
    metadata = FakeMetadataFetcher(info)
    popen = FakePopenFactory(ScriptedProcess(transcript()))
    manager = make_manager(popen_factory=popen, metadata=metadata)

    task_id = manager.create(AddTaskInput(url="https://example.com/v"))
    task = finished(manager, task_id)

    assert metadata.calls == ["https://example.com/v"]
    assert task.format_id == "137+140"
    assert task.total_bytes == 1024
    assert task.title == "Real Title"
    assert task.thumbnail == "https://img.example/t.jpg"
    cmd = popen.commands[0]
    assert cmd[cmd.index("-f") + 1] == "137+140"


def test_preflight_skipped_for_explicit_quality(make_manager, video: Path) -> None:
    metadata = FakeMetadataFetcher(MediaInfo(formats=[FormatChoice("1080p", "137+140")]))
    popen = FakePopenFactory(ScriptedProcess(transcript()))
    manager = make_manager(popen_factory=popen, metadata=metadata)

    task = finished(manager, manager.create(AddTaskInput(url="u", quality="480p")))
    assert metadata.calls == []
    assert task.format_id == ""
    cmd = popen.commands[0]
    assert cmd[cmd.index("-f") + 1] == "bestvideo[height<=480]+bestaudio/best[height<=480]"


def test_preflight_failure_falls_back_to_default_selector(make_manager, video: Path) -> None:
    metadata = FakeMetadataFetcher(error=MetadataError("HTTP Error 403"))
    popen = FakePopenFactory(ScriptedProcess(transcript()))
    manager = make_manager(popen_factory=popen, metadata=metadata)

    task_id = manager.create(AddTaskInput(url="u"))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.COMPLETED
    cmd = popen.commands[0]
    assert cmd[cmd.index("-f") + 1] == DEFAULT_SELECTOR
    assert any("Could not fetch media info" in line for line in manager.get_task_logs(task_id))


def test_audio_only_best_falls_back_to_default_selector(make_manager, video: Path) -> None:
    # unsized HLS video formats are dropped from the ranking, leaving only audio
    metadata = FakeMetadataFetcher(MediaInfo(formats=[FormatChoice("Audio Only", "140", 0, 3000)]))
    popen = FakePopenFactory(ScriptedProcess(transcript()))
    manager = make_manager(popen_factory=popen, metadata=metadata)

    task_id = manager.create(AddTaskInput(url="u"))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.COMPLETED
    assert task.format_id == ""
    cmd = popen.commands[0]
    assert cmd[cmd.index("-f") + 1] == DEFAULT_SELECTOR
    assert any("No sized video format" in line for line in manager.get_task_logs(task_id))


def test_trim_after_download(make_manager, video: Path, download_dir: Path) -> None:
    toolkit = FakeMediaToolkit(payload=b"clip")
    manager = make_manager(popen_factory=FakePopenFactory(ScriptedProcess(transcript())), toolkit=toolkit)

    task_id = manager.create(AddTaskInput(url="u", trim_start="00:01", trim_end="00:02", trim_mode=TrimMode.OVERWRITE))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.COMPLETED
    assert video.read_bytes() == b"clip"
    assert task.files[0].size_bytes == 4
    assert sorted(p.name for p in download_dir.iterdir()) == ["v.mp4"]


def test_keep_both_trim_adds_a_file(make_manager, video: Path) -> None:
    manager = make_manager(popen_factory=FakePopenFactory(ScriptedProcess(transcript())), toolkit=FakeMediaToolkit())

    task_id = manager.create(AddTaskInput(url="u", trim_start="00:01", trim_mode=TrimMode.KEEP_BOTH))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.COMPLETED
    assert [Path(f.path).name for f in task.files] == ["v.mp4", "v_trim_00-01_end.mp4"]
    assert video.read_bytes() == b"\0" * 1024


def test_failed_trim_keeps_the_download(make_manager, sink, video: Path) -> None:
    manager = make_manager(
        popen_factory=FakePopenFactory(ScriptedProcess(transcript())),
        toolkit=FakeMediaToolkit(fail=True),
    )
    observer = RecordingObserver()
    manager.subscribe(observer)

    task_id = manager.create(AddTaskInput(url="u", trim_end="00:02", trim_mode=TrimMode.OVERWRITE))
    task = finished(manager, task_id)

    assert task.status == TaskStatus.TRIM_FAILED
    assert "ffmpeg failed" in task.error_message
    assert video.read_bytes() == b"\0" * 1024
    assert TaskStatus.TRIMMING in sink.statuses(task_id)
    assert observer.failed == [task_id]

    assert manager.retry(task_id) is True


class SlowToolkit(FakeMediaToolkit):
    def probe_duration(self, path: Path) -> float:
        time.sleep(0.5)
        return super().probe_duration(path)


def test_trim_stage_keeps_its_slot(make_manager, sink, config, video: Path, monkeypatch) -> None:
    config.set("concurrency_limit", 1)
    manager = make_manager(popen_factory=FakePopenFactory(ScriptedProcess(transcript())), toolkit=SlowToolkit())
    first_id = manager.create(AddTaskInput(url="https://example.com/a", trim_start="00:01", trim_mode=TrimMode.KEEP_BOTH))

    seen = {}
    emit = sink.emit_log_line

    def on_log_line(task_id: str, message: str, ephemeral: bool) -> None:
        emit(task_id, message, ephemeral)
        if task_id != first_id or message != "Download completed" or seen:
            return
        seen["status"] = manager.get(first_id).status
        seen["second"] = manager.create(AddTaskInput(url="https://example.com/b"))
        seen["active"] = [t.id for t in manager.list() if t.is_active]
        try:
            manager.delete(first_id)
        except TaskBusyError:
            seen["busy"] = True

    monkeypatch.setattr(sink, "emit_log_line", on_log_line)

    peak = 0

    def all_done() -> bool:
        nonlocal peak
        tasks = manager.list()
        peak = max(peak, sum(1 for t in tasks if t.is_active))
        return len(tasks) == 2 and all(t.status == TaskStatus.COMPLETED for t in tasks)

    assert wait_for(all_done, timeout=30, interval=0.01)
    assert peak <= 1
    assert seen["status"] == TaskStatus.TRIMMING
    assert seen["active"] == [first_id]
    assert seen.get("busy") is True

    statuses = sink.statuses(first_id)
    assert TaskStatus.TRIMMING in statuses
    assert TaskStatus.COMPLETED not in statuses[:statuses.index(TaskStatus.TRIMMING)]
    assert len(manager.get(first_id).files) == 2


def test_playlist_children_update_parent(make_manager, sink, config, video: Path) -> None:
    config.set("concurrency_limit", 1)
    manager = make_manager(popen_factory=FakePopenFactory(ScriptedProcess(transcript())))
    parent_id = manager.create_playlist(AddPlaylistTaskInput(
        url="https://example.com/list",
        items=[PlaylistItem(url=f"https://example.com/{i}", index=i + 1) for i in range(2)],
    ))

    for i in range(2):
        finished(manager, f"{parent_id}_{i}")
    assert manager.wait_idle(timeout=10)

    parent = manager.get(parent_id)
    assert parent.status == TaskStatus.COMPLETED
    assert parent.current_item == 2
    counts = [s.current_item for s in sink.snapshots if s.id == parent_id]
    assert 1 in counts


def test_failing_observer_does_not_affect_task(make_manager, video: Path) -> None:
    class Broken(TaskObserver):
        def on_task_completed(self, task):
            raise RuntimeError("observer down")

    manager = make_manager(popen_factory=FakePopenFactory(ScriptedProcess(transcript())))
    manager.subscribe(Broken())
    second = RecordingObserver()
    manager.subscribe(second)

    task_id = manager.create(AddTaskInput(url="u"))
    assert finished(manager, task_id).status == TaskStatus.COMPLETED
    assert second.completed == [task_id]


def test_shutdown_pauses_running_tasks(make_manager, repo) -> None:
    popen = FakePopenFactory(ScriptedProcess(transcript(), hold=30))
    manager = make_manager(popen_factory=popen)
    task_id = manager.create(AddTaskInput(url="u"))
    assert wait_for(lambda: manager.get(task_id).status == TaskStatus.DOWNLOADING)

    manager.shutdown(timeout=10)

    assert popen.procs[0].poll() is not None
    assert repo.get(task_id).status == TaskStatus.PAUSED
