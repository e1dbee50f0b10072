# executor.py
from __future__ import annotations

import subprocess
import threading
from typing import Callable, Dict, IO, List, Optional

from .context import ExecutionContext
from .model import Step, StepResult, StepStatus, now_utc
from .settings import KILL_GRACE_SECONDS, OUTPUT_CAP_BYTES
from .ui.console import get_console


TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "curl": "Install curl or use wget in the probe step.",
    "wget": "Install wget or use curl in the probe step.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "sh": "A POSIX shell is required for sh() steps.",
}


class CancelToken:
    """
    Shared between a runner and the executions it starts.

    cancel() terminates every registered process and makes later
    registrations terminate immediately.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._live: Dict[int, Callable[[], None]] = {}
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def register(self, key: int, terminate: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._live[key] = terminate
                return
        terminate()

    def unregister(self, key: int) -> None:
        with self._lock:
            self._live.pop(key, None)

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            live = list(self._live.values())
            self._live.clear()
        for terminate in live:
            terminate()


class _BoundedBuffer:
    """Keeps the first `cap` bytes of a stream; counts the rest."""

    def __init__(self, cap: int):
        self.cap = cap
        self._chunks: List[bytes] = []
        self._size = 0
        self.dropped = 0

    def drain(self, stream: IO[bytes]) -> None:
        try:
            for chunk in iter(lambda: stream.read(8192), b""):
                room = max(self.cap - self._size, 0)
                kept = chunk[:room]
                if kept:
                    self._chunks.append(kept)
                    self._size += len(kept)
                self.dropped += len(chunk) - len(kept)
        finally:
            stream.close()

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def text(self) -> str:
        out = b"".join(self._chunks).decode("utf-8", errors="replace")
        if self.dropped:
            out += f"\n[output truncated: {self.dropped} bytes dropped]"
        return out


def _hint_for(command) -> str | None:
    tool = command[0].rsplit("/", 1)[-1] if command else ""
    return TOOL_HINTS.get(tool)


class StepExecutor:
    """Runs one step in one execution context and reports how it went."""

    def __init__(
        self,
        output_cap: int = OUTPUT_CAP_BYTES,
        kill_grace: float = KILL_GRACE_SECONDS,
    ):
        self.output_cap = output_cap
        self.kill_grace = kill_grace

    def execute(
        self,
        step: Step,
        context: ExecutionContext,
        cancel: CancelToken | None = None,
    ) -> StepResult:
        console = get_console()
        result = StepResult(step_id=step.id, status=StepStatus.RUNNING, started_at=now_utc(), attempts=1)

        try:
            proc = context.spawn(step.command, env=step.env, cwd=step.cwd)
        except FileNotFoundError as e:
            # Popen sets filename to the missing executable; cwd errors leave it unset
            hint = _hint_for(step.command) if e.filename == step.command[0] else None
            result.status = StepStatus.FAILED
            result.error = f"{e}" + (f" (hint: {hint})" if hint else "")
            result.finished_at = now_utc()
            return result
        except OSError as e:
            result.status = StepStatus.FAILED
            result.error = f"could not start command: {e}"
            result.finished_at = now_utc()
            return result

        console.print_debug(f"[{step.id}] pid={proc.pid} in {context!r}: {list(step.command)}")

        out = _BoundedBuffer(self.output_cap)
        err = _BoundedBuffer(self.output_cap)
        readers = [
            threading.Thread(target=out.drain, args=(proc.stdout,), daemon=True),
            threading.Thread(target=err.drain, args=(proc.stderr,), daemon=True),
        ]
        for t in readers:
            t.start()

        if cancel is not None:
            cancel.register(proc.pid, lambda: context.terminate(proc, self.kill_grace))

        timed_out = False
        try:
            proc.wait(timeout=step.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            context.terminate(proc, self.kill_grace)
        finally:
            if cancel is not None:
                cancel.unregister(proc.pid)

        for t in readers:
            # a grandchild that escaped the process group can keep a pipe open
            t.join(timeout=self.kill_grace)

        result.finished_at = now_utc()
        result.exit_code = proc.returncode
        result.stdout = out.text()
        result.stderr = err.text()
        result.truncated = out.truncated or err.truncated

        if timed_out:
            result.status = StepStatus.TIMED_OUT
            result.error = f"timed out after {step.timeout:g}s"
        elif cancel is not None and cancel.cancelled and proc.returncode != 0:
            result.status = StepStatus.FAILED
            result.error = cancel.reason or "cancelled"
        elif proc.returncode == 0:
            result.status = StepStatus.SUCCEEDED
        else:
            result.status = StepStatus.FAILED

        return result
