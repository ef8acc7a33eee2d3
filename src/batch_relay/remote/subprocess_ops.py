"""Shell-command remote operations with detached processes.

Each submit starts a shell command in its own session and returns a handle
that only holds plain data (operation id, pid, directory). The wrapper shell
writes the command's exit code to a file when it finishes, so any later pass,
in this process or another one, can poll the handle.

Operation directory layout:
    <workdir>/<operation_id>/stdout.log
    <workdir>/<operation_id>/stderr.log
    <workdir>/<operation_id>/exit_code
"""

import os
import shlex
import subprocess
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..driver.backends import RemoteOperations
from ..driver.errors import PollError, SubmitError
from ..driver.models import OperationStatus


EXIT_CODE_FILE = "exit_code"
STDERR_TAIL_CHARS = 500


def _pid_alive(pid: int) -> bool:
    """Check process existence without signalling it."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_tail(path: Path, max_chars: int = STDERR_TAIL_CHARS) -> str:
    if not path.exists():
        return ""
    text = path.read_text(errors="replace")
    return text[-max_chars:].strip()


class SubprocessOperations(RemoteOperations):
    """Runs item payloads as detached shell commands.

    Payload format:
        {"command": "make build" | ["make", "build"],
         "cwd": "/optional/working/dir",
         "env": {"OPTIONAL": "overrides"}}
    A bare string or list payload is treated as the command.

    Example:
        >>> ops = SubprocessOperations(workdir=".relay_ops")
        >>> handle, status = ops.submit({"command": ["sleep", "1"]})
        >>> ops.poll(handle).done
        False
    """

    def __init__(self, workdir: str = ".relay_ops", shell: str = "/bin/sh"):
        """Initialize subprocess operations.

        Args:
            workdir: Directory holding one subdirectory per operation
            shell: Shell used to run the wrapper script
        """
        self.workdir = Path(workdir)
        self.shell = shell
        self._processes: Dict[str, subprocess.Popen] = {}

    def submit(self, payload: Any) -> Tuple[Dict[str, Any], OperationStatus]:
        """Start the command described by payload.

        Raises:
            SubmitError: If the payload has no command or the shell can't start
        """
        command, cwd, env_overrides = self._parse_payload(payload)

        operation_id = uuid.uuid4().hex
        op_dir = (self.workdir / operation_id).resolve()
        op_dir.mkdir(parents=True, exist_ok=True)

        stdout_path = shlex.quote(str(op_dir / "stdout.log"))
        stderr_path = shlex.quote(str(op_dir / "stderr.log"))
        exit_tmp = shlex.quote(str(op_dir / f"{EXIT_CODE_FILE}.tmp"))
        exit_path = shlex.quote(str(op_dir / EXIT_CODE_FILE))

        # The rename makes the exit code appear atomically
        script = (
            f"( {command} ) > {stdout_path} 2> {stderr_path}; "
            f"echo $? > {exit_tmp} && mv {exit_tmp} {exit_path}"
        )

        env = os.environ.copy()
        env.update({str(k): str(v) for k, v in env_overrides.items()})

        try:
            process = subprocess.Popen(
                [self.shell, "-c", script],
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise SubmitError(f"Failed to start command: {e}") from e

        self._processes[operation_id] = process

        handle = {"operation_id": operation_id, "pid": process.pid, "dir": str(op_dir)}
        return handle, OperationStatus(done=False, message=f"started pid {process.pid}")

    def poll(self, handle: Any) -> OperationStatus:
        """Report whether the command has exited.

        Raises:
            PollError: If the handle is malformed or the process vanished
                without recording an exit code
        """
        try:
            operation_id = handle["operation_id"]
            pid = int(handle["pid"])
            op_dir = Path(handle["dir"])
        except (TypeError, KeyError, ValueError) as e:
            raise PollError(f"Malformed handle: {handle!r}") from e

        # Reap our own children so finished commands don't linger as zombies
        process = self._processes.get(operation_id)
        if process is not None and process.poll() is not None:
            self._processes.pop(operation_id, None)

        status = self._read_exit_status(op_dir)
        if status is not None:
            return status

        if not _pid_alive(pid):
            # The wrapper may have finished between the two checks
            status = self._read_exit_status(op_dir)
            if status is not None:
                return status
            raise PollError(f"Process {pid} exited without recording an exit code")

        return OperationStatus(done=False, message=f"running (pid {pid})")

    def _read_exit_status(self, op_dir: Path) -> Optional[OperationStatus]:
        exit_file = op_dir / EXIT_CODE_FILE
        if not exit_file.exists():
            return None

        try:
            code = int(exit_file.read_text().strip())
        except ValueError as e:
            raise PollError(f"Unreadable exit code in {exit_file}") from e

        if code == 0:
            return OperationStatus(done=True, message="exit code 0")

        stderr_tail = _read_tail(op_dir / "stderr.log")
        error = f"exit code {code}"
        if stderr_tail:
            error += f": {stderr_tail}"
        return OperationStatus(done=True, error_message=error)

    def _parse_payload(self, payload: Any) -> Tuple[str, Optional[str], Dict[str, Any]]:
        if isinstance(payload, dict):
            command = payload.get("command")
            cwd = payload.get("cwd")
            env = payload.get("env") or {}
        else:
            command, cwd, env = payload, None, {}

        if isinstance(command, (list, tuple)):
            command = shlex.join(str(part) for part in command)

        if not isinstance(command, str) or not command.strip():
            raise SubmitError(f"Payload has no command: {payload!r}")
        if not isinstance(env, dict):
            raise SubmitError(f"Payload env must be a mapping, got {type(env).__name__}")

        return command, cwd, env
