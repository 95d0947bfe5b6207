"""
Pipeline: Job runner for the external process chains.

Every job kind is a list of stages, and one runner executes any list. Stages
run strictly in sequence; the chain stops at the first stage that does not
exit 0. Whatever happens, the scratch directory is removed and exactly one
final status line is reported.

Design principles:
- Pipeline structure is data (PIPELINES), not implicit in code
- A process stage is spawn -> on_output_chunk* -> on_exit
- Nothing raised inside a job escapes run(); it becomes a FATAL status line
- No retries, no timeouts, no cancellation: a job runs to its own end
"""

import asyncio
import base64
import codecs
import os
import secrets
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from config import AppConfig, SandboxConfig
from llm import LLMClient
from logging_utils import get_logger
from messages import (
    CRLF,
    HEARTBEAT_TEXT,
    OutboundMessage,
    TerminalLogMessage,
    banner,
    diagram_result,
    generation_result,
    status_line,
    terminal_log,
)
from state import Job, JobKind, JobState, JobStatus

logger = get_logger(__name__)

SOURCE_FILE = "design.v"
NETLIST_FILE = "netlist.json"
DIAGRAM_FILE = "diagram.svg"

# `docker run` reserves these for its own failures (daemon, exec, not found)
DOCKER_LAUNCH_EXIT_CODES = frozenset({125, 126, 127})

READ_CHUNK_SIZE = 4096

OutputCallback = Callable[[OutboundMessage], None]
DoneCallback = Callable[[TerminalLogMessage], None]


class StageLaunchError(Exception):
    """Raised when an external binary or the container runtime cannot start."""
    pass


@dataclass
class StageContext:
    """What a stage may touch while it runs."""
    config: AppConfig
    llm: LLMClient
    emit: OutputCallback


def sandboxed(argv: list[str], work_dir: str, sandbox: SandboxConfig, image: str) -> list[str]:
    """
    Wrap argv so it runs inside the container with work_dir mounted.

    With the sandbox disabled argv runs directly, with work_dir as cwd.
    """
    if not sandbox.enabled:
        return argv
    host_path = os.path.abspath(work_dir)
    return [
        "docker", "run", "--rm",
        "--network", "none",
        "-v", f"{host_path}:{sandbox.container_workdir}",
        "-w", sandbox.container_workdir,
        image,
        *argv,
    ]


# =============================================================================
# Stages
# =============================================================================

class Stage(ABC):
    """One step of a job's pipeline."""

    label: str = "stage"
    needs_scratch: bool = True

    @abstractmethod
    async def run(self, job: Job, ctx: StageContext) -> int:
        """Run the stage and return its exit code (0 = success)."""
        pass

    def finished_text(self, exit_code: int) -> str:
        return f"{self.label} finished (exit code {exit_code})"


class ProcessStage(Stage):
    """
    A stage backed by one external process.

    Subclasses provide command(); they may override on_output_chunk() and
    on_exit(). The heartbeat, when enabled, runs for exactly as long as
    the process does.
    """

    heartbeat: bool = False

    @abstractmethod
    def command(self, job: Job, sandbox: SandboxConfig) -> list[str]:
        pass

    async def spawn(self, job: Job, ctx: StageContext) -> asyncio.subprocess.Process:
        argv = self.command(job, ctx.config.sandbox)
        logger.debug("Spawning %s: %s", self.label, argv)
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                cwd=job.work_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StageLaunchError(f"{argv[0]}: {e.strerror or e}") from e

    def on_output_chunk(self, job: Job, ctx: StageContext, text: str) -> None:
        """Forward process output verbatim and keep a copy on the job."""
        job.record_output(text)
        ctx.emit(terminal_log(text))

    async def on_exit(self, job: Job, ctx: StageContext, exit_code: int) -> int:
        """Hook for post-processing; returns the stage's effective exit code."""
        return exit_code

    async def run(self, job: Job, ctx: StageContext) -> int:
        process = None
        heartbeat_task = None
        pumps: list[asyncio.Task] = []
        try:
            process = await self.spawn(job, ctx)
            if self.heartbeat:
                heartbeat_task = asyncio.create_task(
                    _heartbeat(ctx.emit, ctx.config.jobs.heartbeat_interval)
                )
            pumps = [
                asyncio.create_task(self._pump(process.stdout, job, ctx)),
                asyncio.create_task(self._pump(process.stderr, job, ctx)),
            ]
            await asyncio.gather(*pumps)
            exit_code = await process.wait()
        finally:
            for pump in pumps:
                pump.cancel()
            if heartbeat_task is not None:
                heartbeat_task.cancel()
                try:
                    await heartbeat_task
                except asyncio.CancelledError:
                    pass
            if process is not None and process.returncode is None:
                # Output handling failed; the child must not outlive its scratch dir
                await _kill(process)

        if ctx.config.sandbox.enabled and exit_code in DOCKER_LAUNCH_EXIT_CODES:
            raise StageLaunchError(f"container runtime exited with code {exit_code}")

        return await self.on_exit(job, ctx, exit_code)

    async def _pump(self, stream: asyncio.StreamReader, job: Job, ctx: StageContext) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self.on_output_chunk(job, ctx, text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self.on_output_chunk(job, ctx, tail)


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


async def _heartbeat(emit: OutputCallback, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        emit(terminal_log(HEARTBEAT_TEXT))


class SynthesisStage(ProcessStage):
    """Run a Yosys script against design.v."""

    label = "Compilation"
    heartbeat = True

    def __init__(self, script_field: str, explain: bool = False):
        """
        Args:
            script_field: Name of the SandboxConfig field holding the script.
            explain: Ask the model to explain the log once Yosys exits.
        """
        self.script_field = script_field
        self.explain = explain

    def command(self, job: Job, sandbox: SandboxConfig) -> list[str]:
        script = getattr(sandbox, self.script_field)
        return sandboxed(
            [sandbox.yosys_binary, "-p", script],
            job.work_dir,
            sandbox,
            sandbox.image,
        )

    async def on_exit(self, job: Job, ctx: StageContext, exit_code: int) -> int:
        job.exit_code = exit_code
        if self.explain and ctx.config.jobs.explain_compile_logs:
            await _explain_log(job, ctx, exit_code)
        return exit_code


async def _explain_log(job: Job, ctx: StageContext, exit_code: int) -> None:
    ctx.emit(banner("Asking the model to explain this log..."))
    try:
        explanation = await ctx.llm.explain_log(job.output, exit_code)
    except Exception:
        logger.exception("Log explanation failed")
        ctx.emit(banner("Model error: Could not get explanation."))
        return

    ctx.emit(banner("Model's Explanation"))
    ctx.emit(terminal_log(explanation.replace("\r\n", "\n").replace("\n", CRLF)))
    ctx.emit(terminal_log(CRLF + "-" * 32 + CRLF))


class RenderStage(ProcessStage):
    """Render netlist.json to an SVG schematic with netlistsvg."""

    label = "Schematic rendering"

    def command(self, job: Job, sandbox: SandboxConfig) -> list[str]:
        return sandboxed(
            [sandbox.render_binary, NETLIST_FILE, "-o", DIAGRAM_FILE],
            job.work_dir,
            sandbox,
            sandbox.diagram_image,
        )

    async def on_exit(self, job: Job, ctx: StageContext, exit_code: int) -> int:
        if exit_code != 0:
            return exit_code

        svg_path = os.path.join(job.work_dir, DIAGRAM_FILE)
        try:
            with open(svg_path, "rb") as f:
                svg = f.read()
        except OSError as e:
            logger.error("Renderer exited 0 but %s is unreadable: %s", svg_path, e)
            ctx.emit(banner("ERROR: Renderer produced no image."))
            return 1

        encoded = base64.b64encode(svg).decode("ascii")
        ctx.emit(diagram_result(f"data:image/svg+xml;base64,{encoded}"))
        return 0

    def finished_text(self, exit_code: int) -> str:
        if exit_code == 0:
            return f"Schematic rendered (exit code {exit_code})"
        return f"Schematic rendering failed (exit code {exit_code})"


class CodeGenerationStage(Stage):
    """Ask the hosted model for a Verilog module."""

    label = "Code generation"
    needs_scratch = False

    async def run(self, job: Job, ctx: StageContext) -> int:
        ctx.emit(banner("Generating code..."))
        try:
            code = await ctx.llm.generate_code(job.payload)
        except Exception:
            logger.exception("Code generation failed")
            ctx.emit(banner("Model error: Could not generate code. Please try again."))
            return 1

        ctx.emit(generation_result(code))
        return 0

    def finished_text(self, exit_code: int) -> str:
        return "Code generation finished" if exit_code == 0 else "Code generation failed"


# =============================================================================
# Pipeline Registry
# =============================================================================

PIPELINES: dict[JobKind, list[Stage]] = {
    JobKind.COMPILE: [SynthesisStage("compile_script", explain=True)],
    JobKind.GENERATE_CODE: [CodeGenerationStage()],
    JobKind.GENERATE_DIAGRAM: [SynthesisStage("diagram_script"), RenderStage()],
}


# =============================================================================
# Job Runner
# =============================================================================

class JobRunner:
    """
    Executes a job's pipeline with guaranteed cleanup.

    Usage:
        runner = JobRunner(config, llm)
        job = Job(kind=JobKind.COMPILE, payload=verilog_source)
        await runner.run(job, on_output=print_message, on_done=print_message)
    """

    def __init__(
        self,
        config: AppConfig,
        llm: LLMClient,
        pipelines: dict[JobKind, list[Stage]] | None = None,
    ):
        self.config = config
        self.llm = llm
        self.pipelines = pipelines if pipelines is not None else PIPELINES

    async def run(self, job: Job, on_output: OutputCallback, on_done: DoneCallback) -> JobStatus:
        """
        Run every stage of job's pipeline, then report one final status line.

        on_output receives progress and result messages as they happen;
        on_done receives the final status line after cleanup.
        """
        stages = self.pipelines[job.kind]
        ctx = StageContext(config=self.config, llm=self.llm, emit=on_output)

        status = JobStatus.SUCCESS
        final_text = ""
        current = stages[0]
        try:
            if any(stage.needs_scratch for stage in stages):
                self._allocate_scratch(job)

            job.state = JobState.RUNNING
            for index, stage in enumerate(stages):
                current = stage
                exit_code = await stage.run(job, ctx)
                is_last = index == len(stages) - 1
                if exit_code != 0:
                    status = JobStatus.FAILURE
                    final_text = stage.finished_text(exit_code)
                    break
                if is_last:
                    final_text = stage.finished_text(exit_code)
                else:
                    on_output(banner(stage.finished_text(exit_code)))
        except StageLaunchError as e:
            logger.error("Failed to start %s for job %s: %s", current.label, job.kind.name, e)
            status = JobStatus.FATAL
            final_text = f"FATAL: Failed to start {current.label.lower()}: {e}"
        except Exception as e:
            logger.exception("Job %s crashed", job.kind.name)
            status = JobStatus.FATAL
            final_text = f"FATAL Server-side error: {e}"
        finally:
            self._cleanup(job)

        job.status = status
        job.state = JobState.DONE
        on_done(status_line(final_text, status))
        return status

    def _allocate_scratch(self, job: Job) -> None:
        root = self.config.sandbox.scratch_root
        os.makedirs(root, exist_ok=True)
        work_dir = os.path.join(root, secrets.token_hex(16))
        os.makedirs(work_dir)
        job.work_dir = work_dir
        job.state = JobState.SCRATCH_ALLOCATED

        with open(os.path.join(work_dir, SOURCE_FILE), "w", encoding="utf-8") as f:
            f.write(job.payload)

    def _cleanup(self, job: Job) -> None:
        if job.work_dir is not None:
            try:
                shutil.rmtree(job.work_dir)
            except OSError as e:
                logger.error("Failed to clean up scratch dir %s: %s", job.work_dir, e)
        job.state = JobState.CLEANED
