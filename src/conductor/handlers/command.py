"""``command`` handler - run a local process.

Config::

    command:      str (split with shlex) or list of argv strings; required
    working_dir:  cwd for the process
    environment:  mapping merged over the current environment
    shell:        run through the shell (default False)
    timeout:      seconds; bounded further by the execution timeout

A non-zero exit code fails the execution. Cancellation and timeouts
terminate the process (SIGTERM, then SIGKILL after ``kill_timeout``).
"""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import time
from typing import Any

from conductor.core.errors import HandlerError, HandlerTimeoutError, ValidationError
from conductor.execution.context import ExecutionContext
from conductor.handlers.base import BaseHandler, require_mapping, require_number

MAX_OUTPUT_CHARS = 16_384


class CommandHandler(BaseHandler):
    """Run a command and capture its output."""

    required = ("command",)

    def __init__(self, kill_timeout: float = 5.0, poll_interval: float = 0.1) -> None:
        self.kill_timeout = kill_timeout
        self.poll_interval = poll_interval

    def check(self, config: dict[str, Any]) -> None:
        command = config["command"]
        if isinstance(command, list):
            if not command or not all(isinstance(part, str) for part in command):
                raise ValidationError("'command' list must contain strings", field="command", value=command)
        elif not isinstance(command, str) or not command.strip():
            raise ValidationError("'command' must be a string or list", field="command", value=command)
        working_dir = config.get("working_dir")
        if working_dir is not None and not os.path.isdir(working_dir):
            raise ValidationError(f"working_dir does not exist: {working_dir}", field="working_dir", value=working_dir)
        require_mapping(config, "environment")
        require_number(config, "timeout", minimum=0.001)

    def run(self, ctx: ExecutionContext) -> dict[str, Any]:
        config = ctx.config
        shell = bool(config.get("shell", False))
        command = config["command"]
        if shell:
            argv: str | list[str] = command if isinstance(command, str) else shlex.join(command)
        else:
            argv = shlex.split(command) if isinstance(command, str) else list(command)

        env = None
        if config.get("environment"):
            env = {**os.environ, **{k: str(v) for k, v in config["environment"].items()}}

        limit = config.get("timeout")
        remaining = ctx.time_remaining()
        if remaining is not None:
            limit = remaining if limit is None else min(limit, remaining)

        ctx.check_cancelled()
        # Captured in a file: a full pipe would stall the child.
        with tempfile.TemporaryFile(mode="w+") as sink:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=config.get("working_dir"),
                    env=env,
                    shell=shell,
                    stdout=sink,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
            except OSError as e:
                raise HandlerError(f"Failed to start command: {e}", cause=e) from e

            started = time.monotonic()
            while process.poll() is None:
                if ctx.cancelled:
                    self._terminate(process)
                    ctx.check_cancelled()
                if limit is not None and time.monotonic() - started >= limit:
                    self._terminate(process)
                    raise HandlerTimeoutError(f"Command exceeded {limit:.2f}s", timeout=limit)
                ctx.cancel_event.wait(self.poll_interval)

            sink.seek(0)
            output = sink.read()[-MAX_OUTPUT_CHARS:]
        if process.returncode != 0:
            raise HandlerError(f"Command exited with code {process.returncode}: {output.strip()[-500:]}").with_context(
                exit_code=process.returncode
            )
        return {"exit_code": process.returncode, "output": output}

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
