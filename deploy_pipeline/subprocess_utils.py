from __future__ import annotations

import os
import queue
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from textwrap import shorten
from typing import Mapping, Optional, Sequence

from .logging_utils import get_logger


logger = get_logger(__name__)


# -----------------------------
# CLI progress indicator config
# -----------------------------
_progress_lock = threading.Lock()
_show_progress: bool = True
_progress_idle_seconds: float = 2.0
_progress_style: str = "braille"  # braille | ascii
_progress_interval: float = 0.12

_BRAILLE_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]
_ASCII_FRAMES = ["|", "/", "-", "\\"]

# 취소/시간 초과 시 SIGINT 후 정상 종료를 기다리는 시간. (terraform 은 SIGINT 를 받으면 상태를 저장하고 잠금을 푼다)
DEFAULT_INTERRUPT_GRACE_SECONDS = 60.0


class CommandError(RuntimeError):
    """
    외부 명령 실행 실패.

    returncode 가 None 이면 명령을 찾지 못했거나 시간 초과로 종료된 경우다.
    """

    def __init__(self, message: str, *, cmd: Sequence[str], returncode: Optional[int], output: str = "") -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class CommandCancelled(CommandError):
    """cancel_event 로 실행 중인 프로세스를 중단한 경우."""


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str


def configure_cli_progress(
    *,
    show_progress: bool | None = None,
    idle_seconds: float | None = None,
    style: str | None = None,
    interval: float | None = None,
) -> None:
    """
    전역 진행 표시 설정. CLI 엔트리포인트에서 한 번 호출한다.
    """
    global _show_progress, _progress_idle_seconds, _progress_style, _progress_interval
    with _progress_lock:
        if show_progress is not None:
            _show_progress = bool(show_progress)
        if idle_seconds is not None:
            _progress_idle_seconds = float(idle_seconds)
        if style is not None:
            _progress_style = str(style)
        if interval is not None:
            _progress_interval = float(interval)


def _is_tty(stream) -> bool:  # noqa: ANN001
    isatty = getattr(stream, "isatty", None)
    return bool(isatty is not None and isatty())


def _env_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _resolve_progress(
    show: bool | None,
    idle: float | None,
    style: str | None,
    interval: float | None,
) -> tuple[bool, float, str, float]:
    # 우선순위: 호출 인자 > env > 전역 기본값
    with _progress_lock:
        defaults = (_show_progress, _progress_idle_seconds, _progress_style, _progress_interval)
    from_env = (
        _env_bool("CLI_SHOW_PROGRESS"),
        _env_float("CLI_PROGRESS_IDLE_SECONDS"),
        os.getenv("CLI_PROGRESS_STYLE"),
        _env_float("CLI_PROGRESS_INTERVAL_SECONDS"),
    )
    resolved = []
    for given, env_value, default in zip((show, idle, style, interval), from_env, defaults):
        if given is not None:
            resolved.append(given)
        elif env_value is not None:
            resolved.append(env_value)
        else:
            resolved.append(default)
    return bool(resolved[0]), float(resolved[1]), str(resolved[2]), float(resolved[3])


def _format_elapsed(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:0.1f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m{int(seconds % 60):02d}s"


class _IdleProgressIndicator:
    """
    명령이 일정 시간 아무것도 출력하지 않을 때만 stderr 에 스피너를 그린다.
    terraform apply 처럼 한참 조용한 구간이 있는 명령에서 멈춘 것처럼 보이지 않게 하기 위함.
    """

    def __init__(self, message: str, *, stream, style: str, interval: float, idle_seconds: float) -> None:  # noqa: ANN001
        self._message = message
        self._stream = stream
        self._frames = _ASCII_FRAMES if style.strip().lower() == "ascii" else _BRAILLE_FRAMES
        self._interval = max(interval, 0.02)
        self._idle_seconds = max(idle_seconds, 0.0)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._visible_len = 0

    def _render(self, idx: int, elapsed: float) -> None:
        text = f"{self._frames[idx % len(self._frames)]} {self._message}  {_format_elapsed(elapsed)}"
        self._visible_len = max(self._visible_len, len(text))
        self._stream.write("\r" + text)
        self._stream.flush()

    def clear(self) -> None:
        if self._visible_len <= 0:
            return
        self._stream.write("\r" + (" " * self._visible_len) + "\r")
        self._stream.flush()
        self._visible_len = 0

    def start(self, *, started: float, last_activity) -> None:  # noqa: ANN001
        def _run() -> None:
            idx = 0
            while not self._stop.is_set():
                now = time.monotonic()
                idle = now - last_activity()
                if idle < self._idle_seconds:
                    self.clear()
                    time.sleep(min(self._interval, max(self._idle_seconds - idle, 0.02)))
                    continue
                self._render(idx, now - started)
                idx += 1
                time.sleep(self._interval)

        self._thread = threading.Thread(target=_run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self.clear()


def _failure_detail(output: str) -> str:
    output = output.strip()
    if not output:
        return ""
    return "\noutput:\n" + shorten(output, width=2000)


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 900.0,
    stream_output: bool = False,
    input_text: str | None = None,
    cancel_event: threading.Event | None = None,
    interrupt_grace_seconds: float = DEFAULT_INTERRUPT_GRACE_SECONDS,
    progress_message: str | None = None,
    show_progress: bool | None = None,
    progress_idle_seconds: float | None = None,
    progress_style: str | None = None,
    progress_interval: float | None = None,
) -> RunResult:
    """
    외부 명령(terraform/gcloud/docker) 실행 공통 유틸.

    - stream_output=False: stdout/stderr 캡처. input_text 로 stdin 전달 가능.
    - stream_output=True : stdout/stderr 를 합쳐 실시간으로 흘리고, 전체 출력을 stdout 으로 돌려준다.
      cancel_event 가 set 되면 SIGINT 를 보내 interrupt_grace_seconds 동안 정상 종료를 기다린 뒤
      (그래도 살아 있으면 kill) CommandCancelled 를 던진다.

    실패 시 항상 CommandError (cmd, returncode, output 포함) 를 던진다.
    """
    logger.info("명령 실행: %s", " ".join(cmd))

    show, idle, style, interval = _resolve_progress(
        show_progress, progress_idle_seconds, progress_style, progress_interval
    )
    message = progress_message or shorten(" ".join(cmd), width=72, placeholder="…")
    started = time.monotonic()
    activity = {"last": started}
    indicator: _IdleProgressIndicator | None = None
    if show and _is_tty(sys.stderr):
        indicator = _IdleProgressIndicator(
            message, stream=sys.stderr, style=style, interval=interval, idle_seconds=idle
        )
        indicator.start(started=started, last_activity=lambda: activity["last"])

    try:
        if stream_output:
            return _run_streaming(cmd, cwd=cwd, env=env, timeout=timeout, cancel_event=cancel_event,
                                  grace=interrupt_grace_seconds, indicator=indicator, activity=activity)
        return _run_captured(cmd, cwd=cwd, env=env, timeout=timeout, input_text=input_text)
    finally:
        if indicator is not None:
            indicator.stop()


def _run_captured(
    cmd: Sequence[str],
    *,
    cwd: str | None,
    env: Mapping[str, str] | None,
    timeout: float | None,
    input_text: str | None,
) -> RunResult:
    try:
        result = subprocess.run(  # noqa: S603
            list(cmd),
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            input=input_text,
        )
    except FileNotFoundError as e:
        raise CommandError(
            f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (terraform/gcloud/docker 설치 여부를 확인하세요)",
            cmd=cmd,
            returncode=None,
        ) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            f"명령 실행이 {timeout}초 안에 끝나지 않았습니다: {' '.join(cmd)}",
            cmd=cmd,
            returncode=None,
        ) from e
    except subprocess.CalledProcessError as e:
        output = ((e.stderr or "") + (e.stdout or "")).strip()
        raise CommandError(
            f"명령 실행 실패: {' '.join(cmd)} (exit={e.returncode}){_failure_detail(output)}",
            cmd=cmd,
            returncode=e.returncode,
            output=output,
        ) from e

    if result.stdout:
        logger.debug("명령 stdout: %s", shorten(result.stdout.strip(), width=2000))
    if result.stderr:
        logger.debug("명령 stderr: %s", shorten(result.stderr.strip(), width=2000))
    return RunResult(returncode=result.returncode, stdout=result.stdout or "", stderr=result.stderr or "")


def _interrupt(proc: subprocess.Popen, grace: float) -> None:
    """
    SIGINT 로 정상 종료를 요청하고, grace 초 안에 끝나지 않으면 kill 한다.
    """
    if proc.poll() is not None:
        return
    logger.warning("프로세스에 SIGINT 전송 (pid=%s, 최대 %.0f초 대기)", proc.pid, grace)
    proc.send_signal(signal.SIGINT)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("정상 종료되지 않아 강제 종료합니다 (pid=%s)", proc.pid)
        proc.kill()
        proc.wait()


def _drain(lines: "queue.Queue[str | None]") -> list[str]:
    drained: list[str] = []
    while True:
        try:
            item = lines.get_nowait()
        except queue.Empty:
            return drained
        if item is not None:
            drained.append(item)


def _run_streaming(
    cmd: Sequence[str],
    *,
    cwd: str | None,
    env: Mapping[str, str] | None,
    timeout: float | None,
    cancel_event: threading.Event | None,
    grace: float,
    indicator: _IdleProgressIndicator | None,
    activity: dict,
) -> RunResult:
    # terraform/gcloud 는 stderr 로도 진행 로그를 내보내므로 STDOUT 으로 합친다.
    try:
        proc = subprocess.Popen(  # noqa: S603
            list(cmd),
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except FileNotFoundError as e:
        raise CommandError(
            f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (terraform/gcloud/docker 설치 여부를 확인하세요)",
            cmd=cmd,
            returncode=None,
        ) from e

    lines: queue.Queue[str | None] = queue.Queue()

    def _reader() -> None:
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                lines.put(line)
        finally:
            lines.put(None)

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    out_lines: list[str] = []
    deadline = None if timeout is None else time.monotonic() + float(timeout)

    try:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                _interrupt(proc, grace)
                reader.join(timeout=1.0)
                out_lines.extend(_drain(lines))
                raise CommandCancelled(
                    f"취소 요청으로 명령을 중단했습니다: {' '.join(cmd)}",
                    cmd=cmd,
                    returncode=proc.returncode,
                    output="".join(out_lines),
                )
            if deadline is not None and time.monotonic() >= deadline:
                _interrupt(proc, grace)
                reader.join(timeout=1.0)
                out_lines.extend(_drain(lines))
                raise CommandError(
                    f"명령 실행이 {timeout}초 안에 끝나지 않았습니다: {' '.join(cmd)}",
                    cmd=cmd,
                    returncode=None,
                    output="".join(out_lines),
                )

            try:
                item = lines.get(timeout=0.1)
            except queue.Empty:
                continue

            if item is None:
                break

            if indicator is not None:
                indicator.clear()
            out_lines.append(item)
            sys.stdout.write(item)
            sys.stdout.flush()
            activity["last"] = time.monotonic()

        reader.join(timeout=1.0)
        returncode = proc.wait()
    finally:
        if proc.stdout is not None:
            proc.stdout.close()

    output = "".join(out_lines)
    if returncode != 0:
        raise CommandError(
            f"명령 실행 실패: {' '.join(cmd)} (exit={returncode}){_failure_detail(output)}",
            cmd=cmd,
            returncode=returncode,
            output=output,
        )
    return RunResult(returncode=returncode, stdout=output, stderr="")
