"""
CMDFORGE Execution Engine

Runs one generated script in a child interpreter:
  - writes the code to a uniquely named scratch file
  - spawns the interpreter with cwd pinned to the user directory
  - captures stdout/stderr in chunks while racing exit vs. timeout vs. cancel
  - kills on timeout/cancel, keeping whatever output already arrived
  - always deletes the scratch file

Never raises for a failed script or a failed launch; every path ends in
an ExecutionOutcome.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import subprocess
import tempfile
import time
import uuid
from pathlib import Path

from loguru import logger

from cmdforge.config_loader import ExecutionConfig
from cmdforge.models import UNAVAILABLE_MESSAGE, ExecutionOutcome

PROBE_TIMEOUT_SECONDS = 3
KILL_GRACE_SECONDS = 5.0
READ_CHUNK_BYTES = 64 * 1024
SCRIPT_PREFIX = "cmdforge_script_"


def find_interpreter(candidates: list[str]) -> str | None:
    """Return the first candidate that answers `--version` with exit code 0."""
    for command in candidates:
        try:
            result = subprocess.run(
                [command, "--version"],
                capture_output=True,
                text=True,
                timeout=PROBE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired):
            continue
        if result.returncode == 0:
            version = (result.stdout or result.stderr).strip()
            logger.debug(f"[EXEC] Interpreter resolved: {command} ({version})")
            return command
    return None


async def _pump(stream: asyncio.StreamReader, sink: list[str]) -> None:
    # Fixed-size reads: no line is too long to capture
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        sink.append(decoder.decode(chunk))
    sink.append(decoder.decode(b"", final=True))


class ExecutionEngine:
    """
    Time-bounded Python runner.

    The interpreter is probed once here and cached; a failed probe is a
    permanent 'unavailable' state for the lifetime of the engine.
    """

    def __init__(self, config: ExecutionConfig | None = None, interpreter: str | None = None):
        self.config = config or ExecutionConfig()
        self.timeout = self.config.timeout_seconds
        self.working_dir = self.config.working_path
        self.scratch_dir = self.config.scratch_path or Path(tempfile.gettempdir())

        explicit = interpreter or self.config.interpreter
        self._interpreter = explicit or find_interpreter(self.config.interpreter_candidates)
        if self._interpreter is None:
            logger.warning(
                f"[EXEC] No Python interpreter found (tried {self.config.interpreter_candidates})"
            )

    @property
    def interpreter(self) -> str | None:
        return self._interpreter

    @property
    def available(self) -> bool:
        return self._interpreter is not None

    async def execute(self, code: str, cancel: asyncio.Event | None = None) -> ExecutionOutcome:
        if self._interpreter is None:
            return ExecutionOutcome(status="unavailable", message=UNAVAILABLE_MESSAGE)

        script = self.scratch_dir / f"{SCRIPT_PREFIX}{uuid.uuid4().hex}.py"
        started = time.monotonic()
        try:
            script.write_text(code, encoding="utf-8")
            return await self._run(script, cancel, started)
        except Exception as e:
            logger.error(f"[EXEC] Launch failed: {e}")
            return ExecutionOutcome(
                status="error",
                message=f"Error: {e}",
                duration_seconds=time.monotonic() - started,
            )
        finally:
            try:
                script.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"[EXEC] Could not delete scratch file {script}: {e}")

    async def _run(
        self,
        script: Path,
        cancel: asyncio.Event | None,
        started: float,
    ) -> ExecutionOutcome:
        env = {**os.environ, "PYTHONUNBUFFERED": "1", "PYTHONIOENCODING": "utf-8"}
        proc = await asyncio.create_subprocess_exec(
            self._interpreter,
            str(script),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.working_dir),
            env=env,
        )
        logger.debug(f"[EXEC] pid={proc.pid} {self._interpreter} {script.name}")

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            asyncio.ensure_future(_pump(proc.stdout, stdout_chunks)),
            asyncio.ensure_future(_pump(proc.stderr, stderr_chunks)),
        ]
        waiter = asyncio.ensure_future(proc.wait())
        stop = asyncio.ensure_future(cancel.wait()) if cancel is not None else None

        done: set[asyncio.Future] = set()
        try:
            watched = {waiter} if stop is None else {waiter, stop}
            done, _ = await asyncio.wait(
                watched, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if waiter not in done:
                self._terminate(proc)
                await asyncio.wait({waiter}, timeout=KILL_GRACE_SECONDS)
            await asyncio.wait(readers, timeout=KILL_GRACE_SECONDS)
        finally:
            if proc.returncode is None:
                self._terminate(proc)
            for task in (waiter, stop, *readers):
                if task is not None and not task.done():
                    task.cancel()

        outcomes = await asyncio.gather(*readers, return_exceptions=True)
        read_errors = [r for r in outcomes if isinstance(r, Exception)]

        duration = time.monotonic() - started
        stdout = "".join(stdout_chunks).replace("\r\n", "\n").strip()
        stderr = "".join(stderr_chunks).replace("\r\n", "\n").strip()

        if read_errors:
            logger.error(f"[EXEC] Output capture failed: {read_errors[0]!r}")
            return ExecutionOutcome(
                status="error",
                stdout=stdout,
                stderr=stderr,
                exit_code=proc.returncode,
                duration_seconds=duration,
                message=f"Error: Could not read script output ({read_errors[0]})",
            )

        if waiter not in done:
            if stop is not None and stop in done:
                logger.info(f"[EXEC] Cancelled after {duration:.1f}s")
                return ExecutionOutcome(
                    status="cancelled",
                    stdout=stdout,
                    stderr=stderr,
                    duration_seconds=duration,
                    message="Error: Execution cancelled",
                )
            logger.warning(f"[EXEC] Timed out after {self.timeout:g}s")
            return ExecutionOutcome(
                status="timeout",
                stdout=stdout,
                stderr=stderr,
                duration_seconds=duration,
                message=f"Error: Python script execution timed out ({self.timeout:g} seconds)",
            )

        exit_code = proc.returncode
        logger.debug(f"[EXEC] Exit {exit_code} in {duration:.2f}s")
        return ExecutionOutcome(
            status="success" if exit_code == 0 else "failed",
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_seconds=duration,
        )

    @staticmethod
    def _terminate(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"[EXEC] Kill failed (process likely gone): {e}")
