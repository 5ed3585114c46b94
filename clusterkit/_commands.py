"""Command helpers for invoking terraform, kops, and kubectl.

Every external process goes through :func:`run_command`, which is the only
place where the :class:`ExecutionContext` is turned into environment
variables. Probes that are expected to fail use :func:`probe_command`, which
returns a :class:`Probe` value instead of raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from plumbum import local
from plumbum.commands.processes import CommandNotFound, ProcessExecutionError

from clusterkit._cluster_errors import CommandError
from clusterkit._cluster_models import (
    CommandResult,
    ExecutionContext,
    Probe,
    ProbeFailed,
    ProbeSucceeded,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandContext:
    """Execution options for :func:`run_command`.

    Attributes
    ----------
    cwd
        Working directory for the command.
    stdin
        Text fed to the command's standard input.
    stream
        Attach the command to the terminal instead of capturing output.
    check
        Raise :class:`CommandError` on a non-zero exit status.
    """

    cwd: Path | None = None
    stdin: str | None = None
    stream: bool = False
    check: bool = True


def _validate_command_args(args: list[str]) -> None:
    """Validate CLI arguments for safe execution."""
    for arg in args:
        if not isinstance(arg, str):
            msg = f"Command argument must be a string, got {type(arg).__name__}"
            raise TypeError(msg)
        if "\x00" in arg:
            msg = "Command argument contains an invalid control character"
            raise ValueError(msg)


def run_command(
    context: ExecutionContext,
    command: str,
    *args: str,
    options: CommandContext | None = None,
) -> CommandResult:
    """Execute an external command in ``context``.

    Parameters
    ----------
    context
        Execution context providing the process environment.
    command
        Executable name looked up on ``PATH``.
    *args
        Command arguments.
    options
        Working directory, stdin, streaming, and exit status handling.

    Returns
    -------
    CommandResult
        Result containing success status, output, and return code.

    Raises
    ------
    CommandError
        When ``options.check`` is set and the command exits non-zero.

    Examples
    --------
    >>> from pathlib import Path
    >>> from clusterkit._cluster_models import ClusterIdentity
    >>> identity = ClusterIdentity.from_name("dev.example.com", Path("/tmp/dev"))
    >>> run_command(ExecutionContext(identity=identity), "printf", "hello").stdout
    'hello'
    """
    opts = options or CommandContext()
    arguments = list(args)
    _validate_command_args([command, *arguments])

    try:
        bound = local[command][arguments]
    except CommandNotFound as exc:
        msg = f"Command {command!r} not found on PATH"
        raise CommandError(msg) from exc
    if opts.stdin is not None:
        bound = bound << opts.stdin

    kwargs: dict[str, object] = {"env": context.process_env()}
    if opts.cwd is not None:
        kwargs["cwd"] = str(opts.cwd)
    if opts.stream:
        kwargs.update(stdout=None, stderr=None)
        if opts.stdin is None:
            kwargs["stdin"] = None

    logger.debug("Running %s %s", command, " ".join(arguments))
    try:
        return_code, stdout, stderr = bound.run(
            retcode=0 if opts.check else None, **kwargs
        )
    except ProcessExecutionError as exc:
        stderr_text = (exc.stderr or "").strip()
        msg = f"Command {command!r} failed (exit status {exc.retcode})"
        if stderr_text:
            msg = f"{msg}: {stderr_text}"
        raise CommandError(msg) from exc

    return CommandResult(
        success=return_code == 0,
        stdout=stdout or "",
        stderr=stderr or "",
        return_code=return_code,
    )


def probe_command(
    context: ExecutionContext,
    command: str,
    *args: str,
    cwd: Path | None = None,
) -> Probe:
    """Run a command whose failure is an expected outcome.

    The failure reason is logged at debug level only.
    """
    try:
        result = run_command(
            context, command, *args, options=CommandContext(cwd=cwd)
        )
    except CommandError as exc:
        logger.debug("%s", exc)
        return ProbeFailed(reason=str(exc))
    return ProbeSucceeded(stdout=result.stdout)
