# context.py
from __future__ import annotations

import os
import signal
import subprocess
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import ContextProvisionError
from .settings import DOCKER_BIN
from .ui.console import get_console


# ---------------------------------------------------------------------
# Execution contexts
# ---------------------------------------------------------------------

class ExecutionContext:
    """
    Where a step's command runs.

    The runner treats contexts as opaque handles; only the executor calls
    spawn() and terminate().
    """

    name: str = "context"

    def spawn(
        self,
        command: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        cwd: str | None = None,
    ) -> subprocess.Popen:
        raise NotImplementedError

    def terminate(self, proc: subprocess.Popen, grace: float) -> None:
        """SIGTERM the process group, SIGKILL it if still alive after `grace`."""
        if proc.poll() is not None:
            return
        _signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            # started with start_new_session=True, so pgid == pid
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _popen(argv: List[str], **kwargs) -> subprocess.Popen:
    return subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,  # own process group, so timeouts kill children too
        **kwargs,
    )


class LocalContext(ExecutionContext):
    """Runs commands as plain subprocesses on this machine."""

    name = "local"

    def __init__(self, workdir: str | Path = ".", env: Optional[Dict[str, str]] = None):
        self.workdir = Path(workdir).resolve()
        self.env = dict(env or {})

    def spawn(self, command, env=None, cwd=None):
        run_dir = (self.workdir / (cwd or ".")).resolve()
        if not run_dir.is_dir():
            raise FileNotFoundError(f"cwd not found: {run_dir}")

        full_env = os.environ.copy()
        full_env.update(self.env)
        full_env.update(env or {})

        return _popen(list(command), cwd=str(run_dir), env=full_env)

    def __repr__(self) -> str:
        return f"LocalContext({str(self.workdir)!r})"


class DockerContext(ExecutionContext):
    """Runs commands inside a long-lived container via `docker exec`."""

    name = "docker"
    container_workdir = "/workspace"

    def __init__(self, container: str, env: Optional[Dict[str, str]] = None):
        self.container = container
        self.env = dict(env or {})

    def exec_argv(self, command: Sequence[str], env=None, cwd=None) -> List[str]:
        argv = [DOCKER_BIN, "exec"]

        workdir = f"{self.container_workdir}/{cwd.strip('/')}" if cwd else self.container_workdir
        argv.extend(["-w", workdir])

        merged = dict(self.env)
        merged.update(env or {})
        for key, value in merged.items():
            argv.extend(["-e", f"{key}={value}"])

        argv.append(self.container)
        argv.extend(command)
        return argv

    def spawn(self, command, env=None, cwd=None):
        return _popen(self.exec_argv(command, env=env, cwd=cwd))

    def __repr__(self) -> str:
        return f"DockerContext({self.container!r})"


# ---------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------

class ContextProvider:
    """Creates and destroys execution contexts for the runner."""

    def create_context(self, image: str | None, ports: Sequence[str]) -> ExecutionContext:
        raise NotImplementedError

    def destroy_context(self, handle: ExecutionContext) -> None:
        raise NotImplementedError


class LocalContextProvider(ContextProvider):
    """Host subprocesses. `image` and `ports` have no meaning here and are ignored."""

    def __init__(self, workdir: str | Path = ".", env: Optional[Dict[str, str]] = None):
        self.workdir = Path(workdir)
        self.env = dict(env or {})

    def create_context(self, image, ports):
        if not self.workdir.is_dir():
            raise ContextProvisionError(
                "Working directory does not exist",
                details={"workdir": self.workdir},
            )
        return LocalContext(self.workdir, env=self.env)

    def destroy_context(self, handle):
        return None


class DockerContextProvider(ContextProvider):
    """
    One container per context, kept alive with `sleep infinity`.

    The repository root is mounted at /workspace so steps can see the
    sources; ports are published with -p.
    """

    def __init__(
        self,
        workdir: str | Path = ".",
        env: Optional[Dict[str, str]] = None,
        volumes: Optional[List[str]] = None,
        name_prefix: str = "smokeci",
    ):
        self.workdir = Path(workdir).resolve()
        self.env = dict(env or {})
        self.volumes = list(volumes or [])
        self.name_prefix = name_prefix

    def _docker(self, args: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [DOCKER_BIN, *args],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise ContextProvisionError(
                "Docker is not available",
                details={"hint": "Install Docker and ensure the daemon is running."},
            ) from e

    def create_context(self, image, ports):
        if not image:
            raise ContextProvisionError("Docker context requires an image")

        name = f"{self.name_prefix}-{uuid.uuid4().hex[:12]}"
        args = ["run", "-d", "--init", "--name", name]
        args.extend(["-v", f"{self.workdir}:{DockerContext.container_workdir}"])
        for vol in self.volumes:
            args.extend(["-v", vol])
        for port in ports:
            args.extend(["-p", str(port)])
        args.extend(["--entrypoint", "sleep", image, "infinity"])

        proc = self._docker(args)
        if proc.returncode != 0:
            raise ContextProvisionError(
                f"Could not start container from image {image}",
                details={"exit_code": proc.returncode, "stderr": proc.stderr.strip()[-4000:]},
            )

        get_console().print_debug(f"started container {name} ({image})")
        return DockerContext(name, env=self.env)

    def destroy_context(self, handle):
        proc = self._docker(["rm", "-f", handle.container])
        if proc.returncode != 0:
            get_console().print_debug(
                f"docker rm -f {handle.container} failed: {proc.stderr.strip()}"
            )


PROVIDERS = {
    "local": LocalContextProvider,
    "docker": DockerContextProvider,
}


def make_provider(name: str, workdir: str | Path = ".", env: Optional[Dict[str, str]] = None) -> ContextProvider:
    try:
        cls = PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown context provider: {name!r}. Known: {sorted(PROVIDERS)}") from None
    return cls(workdir=workdir, env=env)
