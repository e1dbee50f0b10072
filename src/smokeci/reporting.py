# reporting.py
from __future__ import annotations

import json
import threading
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, List, Optional

from .model import RunResult
from .settings import REPORT_TIMEOUT_SECONDS
from .ui.console import get_console


class ReportError(Exception):
    """Raised by a reporter that could not deliver a result."""
    pass


class ResultReporter:
    """Receives a finished run. Implementations must not block forever."""

    def report(self, result: RunResult) -> None:
        raise NotImplementedError


class ConsoleReporter(ResultReporter):
    def report(self, result: RunResult) -> None:
        get_console().print_results(result)


class JsonFileReporter(ResultReporter):
    """Writes the run as JSON to `path` (parent directories are created)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def report(self, result: RunResult) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(result.to_json(), encoding="utf-8")


class HttpReporter(ResultReporter):
    """POSTs the run as JSON to a collector URL."""

    def __init__(self, url: str, timeout: float = REPORT_TIMEOUT_SECONDS, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        if headers:
            self.headers.update(headers)

    def report(self, result: RunResult) -> None:
        data = json.dumps(result.to_dict()).encode("utf-8")
        req = urllib.request.Request(self.url, data=data, headers=self.headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise ReportError(f"Report request failed: {e.code} {e.reason}. {error_body}") from e
        except urllib.error.URLError as e:
            raise ReportError(f"Network error: {e.reason}") from e


class MultiReporter(ResultReporter):
    """Fans a result out to several reporters; one failing does not stop the rest."""

    def __init__(self, reporters: List[ResultReporter]):
        self.reporters = list(reporters)

    def report(self, result: RunResult) -> None:
        errors = []
        for reporter in self.reporters:
            try:
                reporter.report(result)
            except Exception as e:
                errors.append(f"{type(reporter).__name__}: {e}")
        if errors:
            raise ReportError("; ".join(errors))


def deliver(reporter: ResultReporter, result: RunResult, timeout: float = REPORT_TIMEOUT_SECONDS) -> bool:
    """
    Hand `result` to `reporter`, waiting at most `timeout` seconds.

    Returns True if the reporter finished without error. A reporter that
    is still running after the timeout is abandoned (daemon thread).
    """
    console = get_console()
    errors: List[BaseException] = []

    def _target() -> None:
        try:
            reporter.report(result)
        except Exception as e:
            errors.append(e)

    t = threading.Thread(target=_target, name="smokeci-report", daemon=True)
    t.start()
    t.join(timeout)

    if t.is_alive():
        console.print_error(
            "Reporter timed out",
            f"{type(reporter).__name__} did not finish within {timeout:g}s; the run result is unaffected.",
        )
        return False
    if errors:
        console.print_error(
            "Reporter failed",
            f"{type(reporter).__name__} could not deliver the run result.",
            details=[str(errors[0])],
        )
        return False
    return True
