from __future__ import annotations

import io
import sys
import threading

import pytest

from deploy_pipeline.subprocess_utils import CommandCancelled, CommandError, run_command


class _FakeTty(io.StringIO):
    def isatty(self) -> bool:  # type: ignore[override]
        return True


_BRAILLE_FRAMES = {"⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"}


def _contains_braille_spinner(text: str) -> bool:
    return any(ch in text for ch in _BRAILLE_FRAMES)


def test_stream_output_shows_progress_when_idle(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    stream_output=True 인 경우에도, 일정 시간 출력이 없으면 진행표시(⠙ 등)가 렌더링되어야 한다.
    """
    fake_err = _FakeTty()
    fake_out = io.StringIO()
    monkeypatch.setattr(sys, "stderr", fake_err)
    monkeypatch.setattr(sys, "stdout", fake_out)

    cmd = [
        sys.executable,
        "-c",
        "import time; time.sleep(0.3); print('done')",
    ]

    result = run_command(
        cmd,
        stream_output=True,
        timeout=5,
        progress_message="Test stream progress",
        show_progress=True,
        progress_style="braille",
        progress_idle_seconds=0.05,
        progress_interval=0.02,
    )

    assert result.returncode == 0
    assert result.stdout.strip() == "done"
    assert "done" in fake_out.getvalue()
    assert _contains_braille_spinner(fake_err.getvalue()), fake_err.getvalue()


def test_capture_mode_passes_stdin(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sys, "stderr", io.StringIO())

    cmd = [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"]

    result = run_command(cmd, input_text="ya29.secret", show_progress=False)

    assert result.stdout.strip() == "YA29.SECRET"


def test_non_zero_exit_raises_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sys, "stderr", io.StringIO())

    cmd = [sys.executable, "-c", "import sys; sys.stderr.write('Error: bad config'); sys.exit(3)"]

    with pytest.raises(CommandError) as exc:
        run_command(cmd, show_progress=False)

    assert exc.value.returncode == 3
    assert "bad config" in exc.value.output


def test_missing_binary_raises_command_error() -> None:
    with pytest.raises(CommandError) as exc:
        run_command(["definitely-not-a-real-binary-xyz"], show_progress=False)

    assert exc.value.returncode is None


def test_cancel_event_stops_streaming_process(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sys, "stdout", io.StringIO())
    monkeypatch.setattr(sys, "stderr", io.StringIO())
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()

    cmd = [sys.executable, "-c", "import time; print('started', flush=True); time.sleep(30)"]

    try:
        with pytest.raises(CommandCancelled) as exc:
            run_command(cmd, stream_output=True, timeout=10, cancel_event=cancel, show_progress=False)
    finally:
        timer.cancel()

    assert "started" in exc.value.output


def test_cancel_sends_sigint_before_kill(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:  # noqa: ANN001
    """
    취소 시 자식 프로세스가 SIGINT 를 받아 정리 작업(상태 저장, 잠금 해제 등)을 할 수 있어야 한다.
    """
    monkeypatch.setattr(sys, "stdout", io.StringIO())
    monkeypatch.setattr(sys, "stderr", io.StringIO())
    marker = tmp_path / "cleanup.txt"
    script = (
        "import pathlib, signal, sys, time\n"
        "def _stop(signum, frame):\n"
        "    print('saving state', flush=True)\n"
        "    pathlib.Path(sys.argv[1]).write_text('done')\n"
        "    sys.exit(1)\n"
        "signal.signal(signal.SIGINT, _stop)\n"
        "print('started', flush=True)\n"
        "time.sleep(30)\n"
    )
    cancel = threading.Event()
    timer = threading.Timer(0.5, cancel.set)
    timer.start()

    try:
        with pytest.raises(CommandCancelled) as exc:
            run_command(
                [sys.executable, "-c", script, str(marker)],
                stream_output=True,
                timeout=10,
                cancel_event=cancel,
                interrupt_grace_seconds=5,
                show_progress=False,
            )
    finally:
        timer.cancel()

    assert marker.read_text() == "done"
    assert exc.value.returncode == 1
    assert "saving state" in exc.value.output


def test_cancel_kills_process_that_ignores_sigint(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sys, "stdout", io.StringIO())
    monkeypatch.setattr(sys, "stderr", io.StringIO())
    script = (
        "import signal, time\n"
        "signal.signal(signal.SIGINT, signal.SIG_IGN)\n"
        "print('started', flush=True)\n"
        "time.sleep(30)\n"
    )
    cancel = threading.Event()
    timer = threading.Timer(0.5, cancel.set)
    timer.start()

    try:
        with pytest.raises(CommandCancelled) as exc:
            run_command(
                [sys.executable, "-c", script],
                stream_output=True,
                timeout=10,
                cancel_event=cancel,
                interrupt_grace_seconds=0.3,
                show_progress=False,
            )
    finally:
        timer.cancel()

    assert exc.value.returncode == -9
