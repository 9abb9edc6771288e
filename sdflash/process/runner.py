"""Helper process execution.

This module handles:
- Spawning helper programs with stdin, stdout and stderr pipes
- Feeding optional input before any output is read
- Draining stdout and stderr together with poll(2) so neither pipe can
  fill up and stall the child
- Decoding the raw wait status into a structured ExitStatus
- Connecting several helpers into a pipeline without a shell

Abnormal exits are reported in the returned CommandResult, never raised.
Only an operating-system level failure to create the process or its pipes
raises ProcessSpawnError.
"""

from __future__ import annotations

import errno
import logging
import os
import select
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING

from sdflash.config import Settings, get_settings
from sdflash.errors import SdFlashError
from sdflash.process.programs import locate_program
from sdflash.types import ExitKind

if TYPE_CHECKING:
    from sdflash.state import RunState

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_READABLE = select.POLLIN | select.POLLPRI
_HANGUP = select.POLLHUP | select.POLLERR | select.POLLNVAL

# errno values reported by the child when exec() itself fails
_EXEC_ERRNOS = {errno.ENOENT, errno.EACCES, errno.ENOEXEC, errno.EPERM}


class ProcessSpawnError(SdFlashError):
    """The process or its pipes could not be created at all."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(
            f"Could not start {name}: {reason}", error_code="PROCESS_SPAWN_FAILED"
        )
        self.name = name


@dataclass(frozen=True)
class ExitStatus:
    """Decoded outcome of a helper process.

    Attributes:
        kind: How the process ended.
        code: Exit code (NON_ZERO_EXIT only).
        signal: Terminating signal number (SIGNALED only).
        core_dumped: Whether a core file was written (SIGNALED only).
        error: OS error text (EXEC_FAILED only).
    """

    kind: ExitKind
    code: int | None = None
    signal: int | None = None
    core_dumped: bool = False
    error: str | None = None

    @classmethod
    def from_wait_status(cls, status: int) -> ExitStatus:
        """Decode a raw status as returned by waitpid()."""
        if os.WIFSIGNALED(status):
            return cls(
                kind=ExitKind.SIGNALED,
                signal=os.WTERMSIG(status),
                core_dumped=os.WCOREDUMP(status),
            )
        code = os.WEXITSTATUS(status)
        if code == 0:
            return cls(kind=ExitKind.SUCCESS)
        return cls(kind=ExitKind.NON_ZERO_EXIT, code=code)

    @classmethod
    def exec_failed(cls, error: str) -> ExitStatus:
        """Build the status of a process that never got to run."""
        return cls(kind=ExitKind.EXEC_FAILED, error=error)

    @property
    def ok(self) -> bool:
        return self.kind is ExitKind.SUCCESS

    def describe(self) -> str:
        """Return a short human-readable form of the status."""
        if self.kind is ExitKind.SUCCESS:
            return "exited successfully"
        if self.kind is ExitKind.NON_ZERO_EXIT:
            return f"exited with code {self.code}"
        if self.kind is ExitKind.SIGNALED:
            core = " (core dumped)" if self.core_dumped else ""
            return f"killed by signal {self.signal}{core}"
        return f"could not be executed: {self.error}"


@dataclass(frozen=True)
class CommandResult:
    """Collected output and exit status of one helper invocation.

    Attributes:
        name: Label of the command (usually the program name).
        argv: Argument vector that was executed.
        status: Decoded exit status.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    name: str
    argv: tuple[str, ...]
    status: ExitStatus
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status.ok

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True)
class PipelineResult:
    """Results of the stages of a pipeline, in order."""

    stages: tuple[CommandResult, ...]

    @property
    def ok(self) -> bool:
        return all(stage.ok for stage in self.stages)

    @property
    def failed(self) -> CommandResult | None:
        """Return the last stage that did not succeed, if any.

        When a consumer dies, its producer usually follows with SIGPIPE, so
        the failure nearest the end of the pipeline is the root cause.
        """
        for stage in reversed(self.stages):
            if not stage.ok:
                return stage
        return None

    @property
    def stdout(self) -> str:
        return self.stages[-1].stdout if self.stages else ""


@dataclass(frozen=True)
class Command:
    """A helper invocation to be executed later.

    Attributes:
        name: Label used in logs and error messages.
        argv: Argument vector; a bare argv[0] is looked up by name.
        stdin_text: Optional text fed to the process.
    """

    name: str
    argv: tuple[str, ...]
    stdin_text: str | None = None

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)


class HelperProcessFailedError(SdFlashError):
    """A helper program did not exit successfully."""

    def __init__(self, result: CommandResult, note: str | None = None) -> None:
        message = f"{result.name} {result.status.describe()}"
        detail = result.stderr.strip().splitlines()
        if detail:
            message += f": {detail[-1]}"
        if note:
            message += f". {note}"
        super().__init__(message, error_code="HELPER_PROCESS_FAILED")
        self.result = result
        self.note = note


def _decode(data: bytes | bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace")


def _read_to_eof(fd: int, buffer: bytearray) -> None:
    while True:
        chunk = os.read(fd, _READ_CHUNK)
        if not chunk:
            return
        buffer += chunk


def _drain(streams: dict[int, bytearray]) -> None:
    """Collect every listed descriptor until each one hangs up.

    A descriptor is finished only on hang-up. Readability alone says
    nothing about end of stream, and a pipe may report POLLHUP without a
    preceding POLLIN, so a hang-up is always followed by a read to EOF.
    """
    poller = select.poll()
    for fd in streams:
        poller.register(fd, _READABLE | _HANGUP)

    pending = set(streams)
    while pending:
        for fd, events in poller.poll():
            hung_up = bool(events & _HANGUP)
            if events & _READABLE:
                chunk = os.read(fd, _READ_CHUNK)
                streams[fd] += chunk
                if not chunk:
                    hung_up = True
            if hung_up:
                _read_to_eof(fd, streams[fd])
                poller.unregister(fd)
                pending.discard(fd)


def _reap(proc: subprocess.Popen[bytes]) -> ExitStatus:
    # waitpid() directly: Popen.returncode loses the core dump flag
    _, status = os.waitpid(proc.pid, 0)
    proc.returncode = os.waitstatus_to_exitcode(status)
    return ExitStatus.from_wait_status(status)


def _feed(proc: subprocess.Popen[bytes], name: str, stdin_text: str | None) -> None:
    """Write all input and close the writer before any output is read."""
    assert proc.stdin is not None
    try:
        if stdin_text:
            proc.stdin.write(stdin_text.encode("utf-8"))
        proc.stdin.close()
    except BrokenPipeError:
        # The child exited or closed stdin early; its exit status says why.
        logger.debug("%s closed its input before reading all of it", name)


def _close_all(files: Sequence[IO[bytes] | None]) -> None:
    for f in files:
        if f is not None and not f.closed:
            f.close()


class ProcessRunner:
    """Run helper programs and collect their output.

    Attributes:
        settings: Settings used to locate programs.
        state: Optional run state; every invocation is recorded on it.
    """

    def __init__(
        self, settings: Settings | None = None, state: RunState | None = None
    ) -> None:
        self.settings = settings if settings is not None else get_settings()
        self.state = state

    def resolve(self, argv: Sequence[str]) -> tuple[str, ...]:
        """Replace a bare program name in argv[0] with its located path."""
        if not argv:
            raise ValueError("argv must not be empty")
        program = argv[0]
        if "/" not in program:
            program = locate_program(program, self.settings)
        return (program, *argv[1:])

    def _spawn(
        self, name: str, argv: tuple[str, ...], stdin: int | IO[bytes] | None
    ) -> subprocess.Popen[bytes] | ExitStatus:
        """Start a process, or return the EXEC_FAILED status if exec failed."""
        try:
            return subprocess.Popen(
                argv,
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                close_fds=True,
            )
        except OSError as e:
            if e.errno in _EXEC_ERRNOS:
                logger.warning("Could not execute %s: %s", name, e)
                return ExitStatus.exec_failed(str(e))
            logger.error("Could not spawn %s: %s", name, e)
            raise ProcessSpawnError(name, str(e)) from e

    def _record(self, result: CommandResult) -> CommandResult:
        if result.ok:
            logger.debug("%s %s", result.name, result.status.describe())
        else:
            logger.warning("%s %s", result.name, result.status.describe())
        if self.state is not None:
            self.state.record(result)
        return result

    def run(
        self, name: str, argv: Sequence[str], stdin_text: str | None = None
    ) -> CommandResult:
        """Run one helper program to completion.

        Args:
            name: Label for logs and errors.
            argv: Argument vector; argv[0] is located if it is a bare name.
            stdin_text: Text to feed on standard input, if any.

        Returns:
            CommandResult with both output streams fully drained.

        Raises:
            HelperProgramMissingError: argv[0] could not be located.
            ProcessSpawnError: The process or its pipes could not be created.
        """
        resolved = self.resolve(argv)
        logger.info("Running %s", shlex.join(resolved))

        spawned = self._spawn(name, resolved, subprocess.PIPE)
        if isinstance(spawned, ExitStatus):
            return self._record(CommandResult(name, resolved, spawned))
        proc = spawned
        assert proc.stdout is not None and proc.stderr is not None

        try:
            _feed(proc, name, stdin_text)
            out = bytearray()
            err = bytearray()
            _drain({proc.stdout.fileno(): out, proc.stderr.fileno(): err})
        finally:
            _close_all([proc.stdin, proc.stdout, proc.stderr])

        status = _reap(proc)
        result = CommandResult(
            name, resolved, status, stdout=_decode(out), stderr=_decode(err)
        )
        return self._record(result)

    def run_command(self, command: Command) -> CommandResult:
        """Run a prepared Command."""
        return self.run(command.name, command.argv, command.stdin_text)

    def run_pipeline(self, commands: Sequence[Command]) -> PipelineResult:
        """Run commands with each one's stdout connected to the next one's stdin.

        The processes run concurrently and are all owned by this runner: the
        stderr of every stage and the stdout of the last stage are drained,
        then every stage is reaped before the result is returned. Only the
        first stage may receive stdin_text.

        Args:
            commands: Two or more commands, producer first.

        Returns:
            PipelineResult with one CommandResult per stage.

        Raises:
            HelperProgramMissingError: A program could not be located.
            ProcessSpawnError: A process or pipe could not be created.
        """
        if len(commands) < 2:
            raise ValueError("a pipeline needs at least two commands")

        # Locate everything before starting anything
        argvs = [self.resolve(c.argv) for c in commands]
        logger.info("Running %s", " | ".join(shlex.join(a) for a in argvs))

        procs: list[subprocess.Popen[bytes]] = []
        statuses: list[ExitStatus | None] = [None] * len(commands)
        upstream: IO[bytes] | None = None

        try:
            for index, (command, argv) in enumerate(zip(commands, argvs)):
                if index == 0:
                    stdin: int | IO[bytes] | None = (
                        subprocess.PIPE if command.stdin_text else subprocess.DEVNULL
                    )
                else:
                    stdin = upstream
                spawned = self._spawn(command.name, argv, stdin)
                # The parent's copy of the connecting pipe must not stay open,
                # or the consumer never sees end of input.
                if upstream is not None:
                    upstream.close()
                    upstream = None
                if isinstance(spawned, ExitStatus):
                    statuses[index] = spawned
                    for later in range(index + 1, len(commands)):
                        statuses[later] = ExitStatus.exec_failed(
                            "not started: an earlier stage failed to start"
                        )
                    break
                procs.append(spawned)
                if index < len(commands) - 1:
                    upstream = spawned.stdout

            # Fed once every stage is up, so the producer's output has a reader
            if procs and commands[0].stdin_text:
                _feed(procs[0], commands[0].name, commands[0].stdin_text)

            buffers: dict[int, bytearray] = {}
            stderr_of: dict[int, bytearray] = {}
            for proc in procs:
                assert proc.stderr is not None
                stderr_of[proc.pid] = bytearray()
                buffers[proc.stderr.fileno()] = stderr_of[proc.pid]
            last_out = bytearray()
            last = procs[-1] if len(procs) == len(commands) else None
            if last is not None:
                assert last.stdout is not None
                buffers[last.stdout.fileno()] = last_out
            _drain(buffers)
        finally:
            if upstream is not None:
                upstream.close()
            for proc in procs:
                _close_all([proc.stdin, proc.stdout, proc.stderr])

        results: list[CommandResult] = []
        proc_iter = iter(procs)
        for index, (command, argv) in enumerate(zip(commands, argvs)):
            status = statuses[index]
            if status is not None:
                results.append(self._record(CommandResult(command.name, argv, status)))
                continue
            proc = next(proc_iter)
            stdout = _decode(last_out) if index == len(commands) - 1 else ""
            results.append(
                self._record(
                    CommandResult(
                        command.name,
                        argv,
                        _reap(proc),
                        stdout=stdout,
                        stderr=_decode(stderr_of[proc.pid]),
                    )
                )
            )
        return PipelineResult(tuple(results))


__all__ = [
    "Command",
    "CommandResult",
    "ExitStatus",
    "HelperProcessFailedError",
    "PipelineResult",
    "ProcessRunner",
    "ProcessSpawnError",
]
