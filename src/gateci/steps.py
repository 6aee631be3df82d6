# steps.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence, TextIO, Union

from .adapters import AdapterCall, AdapterRegistry, default_registry
from .errors import SecretMissingError, StepCancelledError, StepTimeoutError
from .gates import GateResult
from .model import Step
from .secret_store import SecretStore, substitute

# Host variables a step may see. Everything else (including ambient
# credentials such as AWS_* or SONAR_TOKEN) must be passed explicitly.
DEFAULT_PASSTHROUGH_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TZ", "TMPDIR", "SHELL")

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "aws": "Install the AWS CLI or fix PATH.",
    "sonar-scanner": "Install sonar-scanner or fix PATH.",
    "git": "Install Git or fix PATH.",
}

KILL_GRACE_SECONDS = 2.0


def hint_for(step: Step, exit_code: int) -> Optional[str]:
    """Exit 127 from the shell means 'command not found'."""
    if exit_code != 127:
        return None
    command = step.run or step.params.get("command", "")
    tool = command.strip().split(" ", 1)[0] if command.strip() else ""
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH." if tool else None)


class CancelToken:
    """
    Cooperative cancellation shared by the engine and every running step.

    cancel(grace) lets in-flight steps keep running until the grace deadline;
    after it, the runner force-terminates them.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._deadline: Optional[float] = None
        self._lock = threading.Lock()

    def cancel(self, grace: float = 0.0) -> None:
        with self._lock:
            deadline = time.monotonic() + max(0.0, grace)
            if self._deadline is None or deadline < self._deadline:
                self._deadline = deadline
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def expired(self) -> bool:
        with self._lock:
            return self._deadline is not None and time.monotonic() >= self._deadline

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if cancellation was requested meanwhile."""
        return self._event.wait(seconds)


@dataclass(frozen=True)
class LogRef:
    """Handle to a step's captured output. Output is never returned inline."""
    path: Path

    def read_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def tail(self, lines: int = 20) -> str:
        return "\n".join(self.read_text().splitlines()[-lines:])

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class StepResult:
    exit_code: int
    output: LogRef
    duration_ms: int
    gate: Optional[GateResult] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class _RedactingLog:
    """File wrapper that masks secret values on every write."""

    def __init__(self, fh: TextIO, secrets: SecretStore):
        self._fh = fh
        self._secrets = secrets
        self._lock = threading.Lock()

    def write(self, text: str) -> int:
        with self._lock:
            self._fh.write(self._secrets.redact(text))
            self._fh.flush()
        return len(text)

    def flush(self) -> None:
        self._fh.flush()


def _terminate(proc: subprocess.Popen) -> None:
    """SIGTERM the whole process group, SIGKILL it if it lingers."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        proc.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
        proc.wait()
    except ProcessLookupError:
        pass


class StepRunner:
    """
    Executes one step in its job's workspace.

    - environment is built from an allowlist, never os.environ wholesale
    - output is streamed into a log file (secrets masked)
    - on timeout the process group is terminated and StepTimeoutError raised
    - no retries here; retry policy belongs to the engine
    """

    def __init__(
        self,
        secrets: Optional[SecretStore] = None,
        adapters: Optional[AdapterRegistry] = None,
        *,
        passthrough_env: Iterable[str] = DEFAULT_PASSTHROUGH_ENV,
        source_root: Union[str, Path] = ".",
        poll_interval: float = 0.05,
    ):
        self.secrets = secrets or SecretStore()
        self.adapters = adapters or default_registry()
        self.passthrough_env = tuple(passthrough_env)
        self.source_root = Path(source_root).resolve()
        self.poll_interval = poll_interval

    def _base_env(self) -> Dict[str, str]:
        return {k: os.environ[k] for k in self.passthrough_env if k in os.environ}

    def run(
        self,
        step: Step,
        environment: Mapping[str, str],
        timeout: Optional[float],
        *,
        job: str,
        workdir: Path,
        log_path: Path,
        cancel: Optional[CancelToken] = None,
    ) -> StepResult:
        try:
            resolved = self.secrets.resolve(step.secret_refs)
        except KeyError as e:
            raise SecretMissingError(job=job, step=step.name, secret=e.args[0]) from None

        env = self._base_env()
        env.update(environment)
        env.update(step.env)
        for env_name, secret_name in step.secrets.items():
            env[env_name] = resolved[secret_name]
        env["GATECI_WORKSPACE"] = str(workdir)
        env["GATECI_JOB"] = job
        env["GATECI_STEP"] = step.name

        cwd = (workdir / (step.cwd or ".")).resolve()
        cwd.mkdir(parents=True, exist_ok=True)

        if cancel is not None and cancel.expired():
            raise StepCancelledError(job=job, step=step.name)

        start = time.monotonic()
        deadline = start + timeout if timeout else None
        log_path.parent.mkdir(parents=True, exist_ok=True)
        env_base, cwd_default = env, cwd

        with open(log_path, "a", encoding="utf-8") as fh:
            log = _RedactingLog(fh, self.secrets)
            log.write(f"## step: {step.name}\n")

            def launch(
                command: Union[str, Sequence[str]],
                *,
                env: Optional[Mapping[str, str]] = None,
                cwd: Optional[Path] = None,
            ) -> int:
                return self._launch(
                    command,
                    env={**env_base, **(env or {})},
                    cwd=cwd or cwd_default,
                    log=log,
                    deadline=deadline,
                    timeout=timeout,
                    cancel=cancel,
                    job=job,
                    step=step.name,
                )

            gate: Optional[GateResult] = None
            message = ""
            if step.run is not None:
                exit_code = launch(substitute(step.run, resolved))
            else:
                params = {k: substitute(v, resolved) for k, v in step.params.items()}
                call = AdapterCall(
                    job=job,
                    step=step.name,
                    workdir=cwd_default,
                    env=dict(env),
                    log=log,
                    launch=launch,
                    source_root=self.source_root,
                )
                raw = self.adapters.invoke(step.uses, params, resolved, call)
                exit_code, gate, message = raw.exit_code, raw.gate, raw.message
                # adapter messages are built from substituted params
                message = self.secrets.redact(message)
                if gate is not None and gate.detail:
                    gate = replace(gate, detail=self.secrets.redact(gate.detail))

            if deadline is not None and time.monotonic() > deadline:
                raise StepTimeoutError(job=job, step=step.name, timeout=timeout or 0.0)

            log.write(f"## exit: {exit_code}\n")

        return StepResult(
            exit_code=exit_code,
            output=LogRef(log_path),
            duration_ms=int((time.monotonic() - start) * 1000),
            gate=gate,
            message=message,
        )

    def _launch(
        self,
        command: Union[str, Sequence[str]],
        *,
        env: Dict[str, str],
        cwd: Path,
        log: _RedactingLog,
        deadline: Optional[float],
        timeout: Optional[float],
        cancel: Optional[CancelToken],
        job: str,
        step: str,
    ) -> int:
        shell = isinstance(command, str)
        try:
            proc = subprocess.Popen(
                command if shell else list(command),
                shell=shell,
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as e:
            log.write(f"command not found: {e.filename}\n")
            return 127

        def pump() -> None:
            assert proc.stdout is not None
            for line in proc.stdout:
                log.write(line)

        reader = threading.Thread(target=pump, daemon=True)
        reader.start()

        while True:
            try:
                code = proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if deadline is not None and time.monotonic() >= deadline:
                    _terminate(proc)
                    reader.join(timeout=KILL_GRACE_SECONDS)
                    log.write(f"## timed out after {timeout:g}s\n")
                    raise StepTimeoutError(job=job, step=step, timeout=timeout or 0.0)
                if cancel is not None and cancel.expired():
                    _terminate(proc)
                    reader.join(timeout=KILL_GRACE_SECONDS)
                    log.write("## terminated by cancellation\n")
                    raise StepCancelledError(job=job, step=step)

        reader.join()
        return code
