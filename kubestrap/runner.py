"""Executes external commands and file writes on the host."""
import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import sh

from kubestrap.errors import NetworkFetchError, StepExecutionError
from kubestrap.utils import command_exists

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single command or file write."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


class CommandRunner:
    """Runs commands through ``sh`` and keeps a history of mutations.

    ``run`` and the write helpers mutate the host and are recorded in
    ``history``. ``query``, ``succeeds``, ``output``, ``read_file``,
    ``path_exists`` and ``which`` are read-only and are what guards use.
    """

    def __init__(self) -> None:
        self.history: List[CommandResult] = []

    @staticmethod
    def build_argv(command: str, args, user: Optional[str] = None) -> List[str]:
        argv = [command, *(str(arg) for arg in args)]
        if user:
            return ["su", "-", user, "-c", shlex.join(argv)]
        return argv

    def _execute(self, argv: List[str], input: Optional[str] = None) -> CommandResult:
        display = shlex.join(argv)
        logger.debug("exec: %s", display)
        try:
            proc = sh.Command(argv[0])(*argv[1:], _in=input, _return_cmd=True)
        except sh.CommandNotFound:
            return CommandResult(display, 127, "", f"{argv[0]}: command not found")
        except sh.ErrorReturnCode as e:
            result = CommandResult(display, e.exit_code, _decode(e.stdout), _decode(e.stderr))
        else:
            result = CommandResult(display, proc.exit_code, _decode(proc.stdout), _decode(proc.stderr))
        if result.stdout.strip():
            logger.debug("stdout: %s", result.stdout.rstrip())
        if result.stderr.strip():
            logger.debug("stderr: %s", result.stderr.rstrip())
        return result

    def run(self, command: str, *args, user: Optional[str] = None,
            input: Optional[str] = None, check: bool = True) -> CommandResult:
        """Run a mutating command; raise StepExecutionError on failure when ``check``."""
        result = self._execute(self.build_argv(command, args, user), input=input)
        self.history.append(result)
        if check and not result.ok:
            raise StepExecutionError(
                f"Command failed with exit code {result.exit_code}: {result.command}", result
            )
        return result

    def query(self, command: str, *args, user: Optional[str] = None) -> CommandResult:
        """Run a read-only command. Never raises, never recorded."""
        return self._execute(self.build_argv(command, args, user))

    def succeeds(self, command: str, *args, user: Optional[str] = None) -> bool:
        return self.query(command, *args, user=user).ok

    def output(self, command: str, *args, user: Optional[str] = None) -> str:
        """Stdout of a read-only command, or an empty string if it failed."""
        result = self.query(command, *args, user=user)
        return result.stdout if result.ok else ""

    def which(self, name: str) -> bool:
        return command_exists(name)

    def read_file(self, path: Union[str, Path]) -> Optional[str]:
        try:
            return Path(path).read_text()
        except (FileNotFoundError, PermissionError, IsADirectoryError):
            return None

    def path_exists(self, path: Union[str, Path]) -> bool:
        return Path(path).exists()

    def write_file(self, path: Union[str, Path], content: str,
                   mode: Optional[int] = None) -> CommandResult:
        """Write ``content`` to ``path``, creating parent directories."""
        path = Path(path)
        logger.debug("write: %s", path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            if mode is not None:
                os.chmod(path, mode)
        except OSError as e:
            result = CommandResult(f"write {path}", 1, "", str(e))
            self.history.append(result)
            raise StepExecutionError(f"Could not write {path}: {e}", result) from e
        result = CommandResult(f"write {path}", 0)
        self.history.append(result)
        return result

    def fetch(self, url: str, dest: Union[str, Path], mode: Optional[int] = None) -> CommandResult:
        """Download ``url`` to ``dest`` with curl."""
        try:
            result = self.run("curl", "-fsSL", "-o", str(dest), url)
        except StepExecutionError as e:
            raise NetworkFetchError(f"Download failed: {url}", e.result) from e
        if mode is not None:
            self.run("chmod", format(mode, "o"), str(dest))
        return result
