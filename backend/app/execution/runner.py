from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import signal
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from app.execution.toolchains import DEFAULT_TOOLCHAINS, PreparedJob, Toolchain
from app.system_metrics import increment_metric, observe_execution_ms
from core.config import (
    EXECUTION_MAX_CONCURRENCY,
    EXECUTION_MAX_OUTPUT_CHARS,
    EXECUTION_SCRATCH_DIR,
    EXECUTION_TIMEOUT_SEC,
)
from core.logger import log_execution

logger = logging.getLogger("app.execution.runner")

GENERIC_FAILURE = "Error: Execution failed"


def timeout_message(timeout_sec: float) -> str:
    return f"Error: Execution timed out (limit: {timeout_sec:g} seconds)"


def new_job_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class StepResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ExecutionRunner:
    """Compiles and runs a snippet in a disposable per-job scratch directory.

    There is no sandboxing beyond the wall-clock limit: the child runs with
    the server's user, filesystem and network access.
    """

    def __init__(
        self,
        scratch_dir: Path = EXECUTION_SCRATCH_DIR,
        timeout_sec: float = EXECUTION_TIMEOUT_SEC,
        toolchains: dict[str, Toolchain] | None = None,
        max_output_chars: int = EXECUTION_MAX_OUTPUT_CHARS,
        max_concurrency: int = EXECUTION_MAX_CONCURRENCY,
    ):
        self.scratch_dir = Path(scratch_dir)
        self.timeout_sec = float(timeout_sec)
        self.toolchains = dict(DEFAULT_TOOLCHAINS if toolchains is None else toolchains)
        self.max_output_chars = max(1, int(max_output_chars))
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency > 0 else None

    @property
    def languages(self) -> list[str]:
        return sorted(self.toolchains)

    async def execute(self, language: str, source: str) -> str:
        normalized = str(language or "").strip().lower()
        toolchain = self.toolchains.get(normalized)
        if toolchain is None:
            increment_metric("executions_unsupported")
            return f"Unsupported language: {language}"

        slot = self._semaphore if self._semaphore is not None else contextlib.nullcontext()
        async with slot:
            return await self._execute_job(toolchain, str(source or ""))

    async def _execute_job(self, toolchain: Toolchain, source: str) -> str:
        job_id = new_job_id()
        job_dir = self.scratch_dir / job_id
        job: PreparedJob | None = None
        owns_dir = False
        started = time.perf_counter()
        outcome = "error"
        try:
            job_dir.mkdir(parents=True, exist_ok=False)
            owns_dir = True
            job = toolchain.prepare(source, job_dir, job_id)
            job.source_path.write_text(job.source_text, encoding="utf-8")

            if job.compile_argv:
                compiled = await self._run_step(job.compile_argv, job_dir, job.env)
                if not compiled.ok:
                    outcome = "timeout" if compiled.timed_out else "compile_error"
                    return self._failure_output(compiled)

            result = await self._run_step(job.run_argv, job_dir, job.env)
            if not result.ok:
                outcome = "timeout" if result.timed_out else "runtime_error"
                return self._failure_output(result)

            outcome = "success"
            return self._finalize(result.stdout or result.stderr)
        except (OSError, ValueError) as exc:
            logger.warning("execution setup failed | job_id=%s err=%s", job_id, exc)
            return GENERIC_FAILURE
        finally:
            if owns_dir:
                self._cleanup(job_dir, job)
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            increment_metric("executions_total")
            increment_metric(f"executions_{outcome}")
            observe_execution_ms(elapsed_ms)
            log_execution(job_id, toolchain.language, outcome, elapsed_ms, source=source)

    async def _run_step(self, argv: list[str], cwd: Path, env: dict[str, str] | None = None) -> StepResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError:
            return StepResult(returncode=127, stderr=f"Error: {argv[0]} is not installed on the execution host")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            return StepResult(returncode=-signal.SIGKILL, timed_out=True)
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        return StepResult(
            returncode=int(proc.returncode or 0),
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        # The child leads its own session, so this also reaches anything it forked.
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()

    def _failure_output(self, result: StepResult) -> str:
        if result.timed_out:
            return timeout_message(self.timeout_sec)
        text = result.stderr or result.stdout
        if not text:
            return f"{GENERIC_FAILURE} (exit code {result.returncode})"
        return self._finalize(text)

    def _finalize(self, text: str) -> str:
        output = text.rstrip("\r\n")
        if len(output) > self.max_output_chars:
            output = output[: self.max_output_chars] + "\n... output truncated"
        return output

    @staticmethod
    def _cleanup(job_dir: Path, job: PreparedJob | None) -> None:
        if job is not None:
            for path in [job.source_path, *job.artifacts]:
                try:
                    path.unlink(missing_ok=True)
                except OSError:
                    pass
        shutil.rmtree(job_dir, ignore_errors=True)
