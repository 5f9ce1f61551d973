"""
Build Service
=============
Cross-compiles the test binary on the control machine and runs the local
fast test suite.

BOUNDARY RULES (CRITICAL):
    - BuildService runs ONLY on the local control machine.
    - BuildService NEVER talks to a remote node (it holds no executor).
    - BuildService NEVER retries. Retry policy lives in the fix cycle and
      the orchestrator.
    - BuildService NEVER fixes code; it reports parsed diagnostics.

MODES:
    - host:   run BUILD_COMMAND in a local shell inside the workspace.
    - docker: run BUILD_COMMAND in an ephemeral container with the
              workspace mounted at /workspace (docker SDK).
"""
import asyncio
import os
import time
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import docker
from docker.errors import ContainerError, ImageNotFound, APIError, DockerException

from fleetloop.core.config import (
    BUILD_MODE,
    BUILD_WORKSPACE,
    BUILD_TARGET,
    BUILD_COMMAND,
    BUILD_DOCKER_IMAGE,
    FAST_TEST_COMMAND,
    DEFAULT_BUILD_TIMEOUT,
)
from fleetloop.core.errors import BuildError
from fleetloop.parser.build_diagnostics import parse_build_output

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Build Outcome
# ---------------------------------------------------------------------------
@dataclass
class BuildOutcome:
    """
    Output of one local command (build or fast tests).

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, -1 = infrastructure failure).
    full_log : str
        Combined stdout + stderr.
    log_excerpt : str
        First + last lines of the log for the activity log / prompts.
    execution_time_seconds : float
        Wall clock duration.
    environment_metadata : dict
        Mode, image, timeout applied.
    error : str | None
        Infrastructure error (not a compile error).
    available : bool
        False when no command was configured (fast tests only).
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    environment_metadata: dict = field(default_factory=dict)
    error: Optional[str] = None
    available: bool = True

    @property
    def success(self) -> bool:
        return self.exit_code == 0


_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """First and last N lines; short logs are returned as-is."""
    lines = full_log.splitlines()
    total = len(lines)
    if total <= head + tail:
        return full_log
    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


# Docker resource limits for sandbox builds
_MEMORY_LIMIT = "8g"
_CPU_COUNT = 4


class BuildService:
    """
    Local build front-end.

    Parameters
    ----------
    workspace : str
        Source tree (cargo workspace root).
    mode : str
        "host" or "docker".
    build_command : str
        Template with {module} and {target} placeholders.
    fast_test_command : str
        Template for the local fast suite; empty = no fast suite.
    """

    def __init__(
        self,
        workspace: str = BUILD_WORKSPACE,
        mode: str = BUILD_MODE,
        target: str = BUILD_TARGET,
        build_command: str = BUILD_COMMAND,
        fast_test_command: str = FAST_TEST_COMMAND,
        docker_image: str = BUILD_DOCKER_IMAGE,
        timeout_seconds: int = DEFAULT_BUILD_TIMEOUT,
    ) -> None:
        if mode not in ("host", "docker"):
            raise ValueError(f"unknown build mode: {mode}")
        self.workspace = os.path.abspath(workspace)
        self.mode = mode
        self.target = target
        self.build_command = build_command
        self.fast_test_command = fast_test_command
        self.docker_image = docker_image
        self.timeout_seconds = timeout_seconds
        self.last_module = ""

    def artifact_path(self, module: str) -> Path:
        return Path(self.workspace) / "target" / self.target / "release" / module

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    async def build(self, module: str) -> Path:
        """
        Build ``module`` and return the artifact path.

        Raises
        ------
        BuildError
            Compile failure (with parsed diagnostics) or missing artifact.
        """
        self.last_module = module
        command = self.build_command.format(module=module, target=self.target)
        logger.info("Building %s (%s mode): %s", module, self.mode, command)
        outcome = await self._execute(command)

        if not outcome.success:
            diagnostics = parse_build_output(outcome.full_log, self.workspace)
            message = outcome.error or f"build of {module} failed (exit {outcome.exit_code})"
            logger.error("%s | %d diagnostics", message, len(diagnostics))
            raise BuildError(message, stderr=outcome.full_log, diagnostics=diagnostics)

        artifact = self.artifact_path(module)
        if not artifact.exists():
            raise BuildError(f"build reported success but {artifact} is missing",
                             stderr=outcome.log_excerpt)

        logger.info("Build complete | artifact=%s | time=%.2fs", artifact, outcome.execution_time_seconds)
        return artifact

    async def run_fast_tests(self, module: str = "") -> BuildOutcome:
        """Run the local fast suite. ``available=False`` when none is configured."""
        if not self.fast_test_command:
            return BuildOutcome(exit_code=0, available=False)
        command = self.fast_test_command.format(module=module or self.last_module, target=self.target)
        logger.info("Running fast tests: %s", command)
        return await self._execute(command)

    # -------------------------------------------------------------------
    # Execution backends
    # -------------------------------------------------------------------
    async def _execute(self, command: str) -> BuildOutcome:
        if self.mode == "docker":
            return await asyncio.to_thread(self._run_in_container, command)
        return await self._run_on_host(command)

    async def _run_on_host(self, command: str) -> BuildOutcome:
        outcome = BuildOutcome(environment_metadata={"mode": "host", "timeout_applied": self.timeout_seconds})
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                "bash", "-c", command,
                cwd=self.workspace,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            try:
                stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
            except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
                if proc.returncode is None:
                    proc.kill()
                    await proc.wait()
                if isinstance(exc, asyncio.CancelledError):
                    raise
                outcome.error = f"command timed out after {self.timeout_seconds}s"
            else:
                outcome.exit_code = proc.returncode
                outcome.full_log = stdout.decode("utf-8", errors="replace")
        except OSError as exc:
            outcome.error = f"could not start build: {exc}"
            logger.error(outcome.error)

        outcome.execution_time_seconds = round(time.monotonic() - start, 3)
        outcome.log_excerpt = create_log_excerpt(outcome.full_log)
        return outcome

    def _run_in_container(self, command: str) -> BuildOutcome:
        """Run ``command`` in an ephemeral container; always returns an outcome."""
        outcome = BuildOutcome()
        start = time.monotonic()
        container = None
        try:
            client = docker.from_env()
            logger.info("Starting build container | image=%s | timeout=%ds", self.docker_image, self.timeout_seconds)
            container = client.containers.run(
                image=self.docker_image,
                command=["bash", "-c", command],
                volumes={self.workspace: {"bind": "/workspace", "mode": "rw"}},
                working_dir="/workspace",
                mem_limit=_MEMORY_LIMIT,
                nano_cpus=_CPU_COUNT * 1_000_000_000,
                labels={"project": "fleetloop", "role": "build"},
                detach=True,
            )
            wait_result = container.wait(timeout=self.timeout_seconds)
            outcome.exit_code = wait_result.get("StatusCode", -1)
            outcome.full_log = container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")
            outcome.environment_metadata = {
                "mode": "docker",
                "image": self.docker_image,
                "container_id": container.short_id,
                "timeout_applied": self.timeout_seconds,
            }
        except ImageNotFound:
            outcome.error = f"Docker image '{self.docker_image}' not found"
            logger.error(outcome.error)
        except ContainerError as e:
            outcome.error = f"Container execution error: {e}"
            outcome.exit_code = getattr(e, "exit_status", -1)
            outcome.full_log = str(e)
            logger.error(outcome.error)
        except (APIError, DockerException) as e:
            outcome.error = f"Docker error: {e}"
            logger.error(outcome.error)
        except Exception as e:
            # container.wait raises requests' ReadTimeout on timeout
            outcome.error = f"Unexpected build error: {type(e).__name__}: {e}"
            logger.exception(outcome.error)
        finally:
            if container is not None:
                try:
                    container.remove(force=True)
                except Exception:
                    logger.warning("Failed to remove build container", exc_info=True)

        outcome.execution_time_seconds = round(time.monotonic() - start, 3)
        outcome.log_excerpt = create_log_excerpt(outcome.full_log)
        return outcome
