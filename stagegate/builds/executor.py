"""Build executors.

The build executor is the opaque component that actually runs stage
commands and verification checks. stagegate never interprets what the
commands do; it only hands them over with the stage's effective
platform, copies planned transfers in, collects declared exports and
hashes them.

This module handles:
- The executor protocol and request/result types
- A docker executor driving the container CLI through subprocess
- A local executor running commands in a per-stage directory
- Capturing stdout/stderr to log files and enforcing timeouts
"""

from __future__ import annotations

import hashlib
import logging
import os
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from stagegate.errors import EXECUTOR_TIMEOUT, ExecutorError

if TYPE_CHECKING:
    from collections.abc import Callable

    from stagegate.platforms.models import PlatformTarget
    from stagegate.transfer.planner import TransferOperation
    from stagegate.types import ArtifactDecl, VerificationCheck

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass
class StageRequest:
    """Everything an executor needs to run one stage.

    Attributes:
        run_id: Run identifier.
        stage_id: Stage identifier.
        base_image: Base image reference.
        platform: Effective platform of the stage.
        commands: Opaque stage commands.
        transfers: Planned inbound copies, already validated.
        exports: Declared exports to collect after the commands finish.
        timeout: Timeout in seconds for the stage commands (None = none).
    """

    run_id: str
    stage_id: str
    base_image: str
    platform: PlatformTarget
    commands: list[str] = field(default_factory=list)
    transfers: list[TransferOperation] = field(default_factory=list)
    exports: list[ArtifactDecl] = field(default_factory=list)
    timeout: int | None = None


@dataclass
class StageExecution:
    """Result of running a stage's commands.

    Attributes:
        success: Whether the commands succeeded.
        exit_code: Exit code of the failing (or last) command.
        artifacts: Content hash per exported path that was produced.
        log_path: Path to the stage log.
        started_at: Start time.
        finished_at: Finish time.
        error_message: Error message if the stage failed.
    """

    success: bool
    exit_code: int
    artifacts: dict[str, str] = field(default_factory=dict)
    log_path: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None


@dataclass
class CheckExecution:
    """Result of running one verification check command."""

    exit_code: int
    output: str
    duration: float = 0.0


class BuildExecutor(Protocol):
    """Protocol implemented by build executors."""

    def run_stage(self, request: StageRequest) -> StageExecution:
        """Run a stage's commands and collect its exports."""
        ...

    def run_check(
        self,
        check: VerificationCheck,
        platform: PlatformTarget,
        timeout: int | None = None,
    ) -> CheckExecution:
        """Run one verification check inside its target stage."""
        ...

    def collect_outputs(
        self, stage_id: str, exports: list[ArtifactDecl]
    ) -> dict[str, str]:
        """Hash the exports currently held from the stage's latest build."""
        ...

    def collect_inputs(
        self, stage_id: str, transfers: list[TransferOperation]
    ) -> dict[str, str]:
        """Hash the inbound copies of the stage's latest build by destination."""
        ...


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def compute_path_hash(path: Path) -> str:
    """Compute a content hash for a file or a directory tree.

    Directories hash their sorted relative file names together with each
    file's content hash, so the result does not depend on mtimes.

    Returns:
        Hash as ``sha256:<hex>``.
    """
    if path.is_file():
        return f"sha256:{compute_file_hash(path)}"
    sha256 = hashlib.sha256()
    for child in sorted(p for p in path.rglob("*") if p.is_file()):
        sha256.update(child.relative_to(path).as_posix().encode("utf-8"))
        sha256.update(b"\0")
        sha256.update(compute_file_hash(child).encode("ascii"))
        sha256.update(b"\n")
    return f"sha256:{sha256.hexdigest()}"


def host_path(root: Path, stage_path: str) -> Path:
    """Map an absolute in-stage path onto a host directory root."""
    return root / stage_path.lstrip("/")


def copy_tree_item(source: Path, destination: Path) -> None:
    """Copy a file or directory, creating parent directories."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        shutil.copy2(source, destination)


def collect_exports(root: Path, exports: list[ArtifactDecl]) -> dict[str, str]:
    """Hash the declared exports present under a host root.

    Missing exports are left out; the orchestrator decides how to treat
    them.
    """
    artifacts: dict[str, str] = {}
    for decl in exports:
        candidate = host_path(root, decl.path)
        if candidate.exists():
            artifacts[decl.path] = compute_path_hash(candidate)
        else:
            logger.warning("Declared export not produced: %s", decl.path)
    return artifacts


def collect_transfers(
    root: Path, transfers: list[TransferOperation]
) -> dict[str, str]:
    """Hash the transfer destinations present under a host root."""
    hashes: dict[str, str] = {}
    for transfer in transfers:
        candidate = host_path(root, transfer.destination_path)
        if candidate.exists():
            hashes[transfer.destination_path] = compute_path_hash(candidate)
    return hashes


def copy_transfers(
    stage_id: str,
    transfers: list[TransferOperation],
    source_root: Callable[[str], Path],
    destination_root: Path,
) -> None:
    """Copy planned transfers from producer roots into a destination root.

    Args:
        stage_id: Receiving stage, used for error attribution.
        transfers: Planned transfers.
        source_root: Callable mapping a producer stage id to its host root.
        destination_root: Host root mirroring the receiving stage.

    Raises:
        ExecutorError: If a source is missing or a copy fails.
    """
    for transfer in transfers:
        source = transfer.source_artifact
        try:
            copy_tree_item(
                host_path(source_root(source.stage_id), source.path),
                host_path(destination_root, transfer.destination_path),
            )
        except OSError as e:
            raise ExecutorError(
                f"Failed to copy '{source.path}' from stage '{source.stage_id}': {e}",
                stage_id=stage_id,
            ) from e


def _platform_env(platform: PlatformTarget, stage_id: str) -> dict[str, str]:
    return {
        "STAGEGATE_STAGE_ID": stage_id,
        "STAGEGATE_PLATFORM": str(platform),
        "STAGEGATE_OS": platform.os,
        "STAGEGATE_ARCH": platform.architecture,
    }


def _run_logged(
    cmd: list[str] | str,
    log_file,
    timeout: int | None,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    shell: bool = False,
) -> int:
    """Run a command appending its output to an open log file.

    Raises:
        subprocess.TimeoutExpired: If the command exceeds the timeout.
        OSError: If the command cannot be started.
    """
    shown = cmd if isinstance(cmd, str) else shlex.join(cmd)
    log_file.write(f"# $ {shown}\n")
    log_file.flush()
    result = subprocess.run(
        cmd,
        cwd=cwd,
        stdout=log_file,
        stderr=subprocess.STDOUT,
        timeout=timeout,
        env=env,
        shell=shell,
        check=False,
    )
    return result.returncode


class _LoggedStageMixin:
    """Shared log-file handling for stage execution."""

    work_dir: Path

    def stage_dir(self, stage_id: str) -> Path:
        """Return the host directory holding a stage's outputs."""
        return self.work_dir / stage_id

    def _open_log(self, request: StageRequest, started_at: datetime):
        log_path = self.work_dir / "logs" / f"{request.stage_id}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = log_path.open("w")
        log_file.write(f"# Run: {request.run_id}\n")
        log_file.write(f"# Stage: {request.stage_id}\n")
        log_file.write(f"# Base image: {request.base_image}\n")
        log_file.write(f"# Platform: {request.platform}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()
        return log_path, log_file

    @staticmethod
    def _close_log(log_file, started_at: datetime, exit_code: int) -> datetime:
        finished_at = datetime.now(timezone.utc)
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")
        log_file.close()
        return finished_at


class LocalExecutor(_LoggedStageMixin):
    """Runs stage commands with the host shell in a per-stage directory.

    Each stage gets ``<work_dir>/<stage_id>/root`` as its filesystem root:
    absolute artifact paths are mapped beneath it and commands run with it
    as the working directory (also exported as ``STAGEGATE_STAGE_ROOT``).
    The platform is informational only; it is exported to the commands as
    environment variables.
    """

    def __init__(self, work_dir: Path) -> None:
        self.work_dir = work_dir

    def stage_root(self, stage_id: str) -> Path:
        """Return the filesystem root used for a stage."""
        return self.stage_dir(stage_id) / "root"

    def collect_outputs(
        self, stage_id: str, exports: list[ArtifactDecl]
    ) -> dict[str, str]:
        """Hash the exports left in the stage root by its latest build."""
        return collect_exports(self.stage_root(stage_id), exports)

    def collect_inputs(
        self, stage_id: str, transfers: list[TransferOperation]
    ) -> dict[str, str]:
        """Hash the transfer destinations in the stage root."""
        return collect_transfers(self.stage_root(stage_id), transfers)

    def _env(self, stage_id: str, platform: PlatformTarget) -> dict[str, str]:
        env = dict(os.environ)
        env.update(_platform_env(platform, stage_id))
        env["STAGEGATE_STAGE_ROOT"] = str(self.stage_root(stage_id))
        return env

    def run_stage(self, request: StageRequest) -> StageExecution:
        """Run stage commands sequentially, stopping at the first failure.

        Raises:
            ExecutorError: On timeout or if a command cannot be started.
        """
        root = self.stage_root(request.stage_id)
        if root.exists():
            shutil.rmtree(root)
        root.mkdir(parents=True)
        copy_transfers(request.stage_id, request.transfers, self.stage_root, root)

        started_at = datetime.now(timezone.utc)
        log_path, log_file = self._open_log(request, started_at)
        env = self._env(request.stage_id, request.platform)
        exit_code = 0
        try:
            for command in request.commands:
                exit_code = _run_logged(
                    command, log_file, request.timeout, cwd=root, env=env, shell=True
                )
                if exit_code != 0:
                    break
        except subprocess.TimeoutExpired as e:
            log_file.write(f"\n# TIMEOUT after {request.timeout} seconds\n")
            log_file.close()
            raise ExecutorError(
                f"Stage timed out after {request.timeout} seconds",
                stage_id=request.stage_id,
                exit_code=-1,
                log_path=str(log_path),
                code=EXECUTOR_TIMEOUT,
            ) from e
        except OSError as e:
            log_file.close()
            raise ExecutorError(
                f"Failed to execute stage commands: {e}",
                stage_id=request.stage_id,
                log_path=str(log_path),
            ) from e

        finished_at = self._close_log(log_file, started_at, exit_code)
        success = exit_code == 0
        return StageExecution(
            success=success,
            exit_code=exit_code,
            artifacts=collect_exports(root, request.exports) if success else {},
            log_path=log_path,
            started_at=started_at,
            finished_at=finished_at,
            error_message=(
                None if success else f"Command failed with exit code {exit_code}"
            ),
        )

    def run_check(
        self,
        check: VerificationCheck,
        platform: PlatformTarget,
        timeout: int | None = None,
    ) -> CheckExecution:
        """Run a check command inside the stage root, capturing its output."""
        root = self.stage_root(check.target_stage_id)
        root.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        try:
            result = subprocess.run(
                check.command,
                cwd=root,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env(check.target_stage_id, platform),
                check=False,
            )
        except subprocess.TimeoutExpired:
            return CheckExecution(
                exit_code=-1,
                output=f"check timed out after {timeout} seconds",
                duration=time.monotonic() - start,
            )
        return CheckExecution(
            exit_code=result.returncode,
            output=(result.stdout or "") + (result.stderr or ""),
            duration=time.monotonic() - start,
        )


def container_name(run_id: str, stage_id: str) -> str:
    """Return the container name used while building a stage."""
    return f"stagegate-{run_id[:12]}-{stage_id}".lower()


def stage_image_tag(stage_id: str, prefix: str = "stagegate") -> str:
    """Return the image tag a built stage is committed under."""
    return f"{prefix}/{stage_id}:latest".lower()


def compose_create_command(
    request: StageRequest,
    name: str,
    docker_binary: str = "docker",
) -> list[str]:
    """Compose the ``docker create`` command for a stage.

    The stage commands run as one ``sh -ec`` script so the first failing
    command stops the stage.
    """
    cmd = [
        docker_binary,
        "create",
        "--platform",
        request.platform.os_arch,
        "--name",
        name,
    ]
    for key, value in _platform_env(request.platform, request.stage_id).items():
        cmd.extend(["--env", f"{key}={value}"])
    script = "\n".join(request.commands) if request.commands else "true"
    cmd.extend([request.base_image, "sh", "-ec", script])
    return cmd


def compose_check_command(
    check: VerificationCheck,
    platform: PlatformTarget,
    docker_binary: str = "docker",
    image_prefix: str = "stagegate",
) -> list[str]:
    """Compose the ``docker run`` command for a verification check."""
    return [
        docker_binary,
        "run",
        "--rm",
        "--platform",
        platform.os_arch,
        stage_image_tag(check.target_stage_id, image_prefix),
        "sh",
        "-c",
        check.command,
    ]


class DockerExecutor(_LoggedStageMixin):
    """Runs stages as containers through the docker CLI.

    For each stage: create a container on the stage's platform, copy the
    planned transfers in, start it, copy declared exports out to
    ``<work_dir>/<stage_id>/outputs``, commit the container as
    ``<prefix>/<stage_id>:latest`` for checks, then remove it.
    """

    def __init__(
        self,
        work_dir: Path,
        docker_binary: str = "docker",
        image_prefix: str = "stagegate",
    ) -> None:
        self.work_dir = work_dir
        self.docker_binary = docker_binary
        self.image_prefix = image_prefix

    def outputs_dir(self, stage_id: str) -> Path:
        """Return the host directory exports are copied to."""
        return self.stage_dir(stage_id) / "outputs"

    def _stage_inbound(self, request: StageRequest) -> Path | None:
        """Lay out inbound transfers in a tree mirroring their destinations."""
        if not request.transfers:
            return None
        inbound = self.stage_dir(request.stage_id) / "inbound"
        if inbound.exists():
            shutil.rmtree(inbound)
        inbound.mkdir(parents=True)
        copy_transfers(request.stage_id, request.transfers, self.outputs_dir, inbound)
        return inbound

    def collect_outputs(
        self, stage_id: str, exports: list[ArtifactDecl]
    ) -> dict[str, str]:
        """Hash the exports last copied out of the stage's container."""
        return collect_exports(self.outputs_dir(stage_id), exports)

    def collect_inputs(
        self, stage_id: str, transfers: list[TransferOperation]
    ) -> dict[str, str]:
        """Hash the inbound tree the stage's container was last built with."""
        return collect_transfers(self.stage_dir(stage_id) / "inbound", transfers)

    def run_stage(self, request: StageRequest) -> StageExecution:
        """Build one stage in a container.

        Raises:
            ExecutorError: On timeout, or if the docker CLI cannot be started.
        """
        name = container_name(request.run_id, request.stage_id)
        outputs = self.outputs_dir(request.stage_id)
        if outputs.exists():
            shutil.rmtree(outputs)
        outputs.mkdir(parents=True)
        inbound = self._stage_inbound(request)

        started_at = datetime.now(timezone.utc)
        log_path, log_file = self._open_log(request, started_at)
        docker = self.docker_binary
        exit_code = 0
        created = False
        try:
            exit_code = _run_logged(
                compose_create_command(request, name, docker), log_file, 300
            )
            created = exit_code == 0
            if created and inbound is not None:
                exit_code = _run_logged(
                    [docker, "cp", f"{inbound}/.", f"{name}:/"], log_file, 300
                )
            if exit_code == 0:
                exit_code = _run_logged(
                    [docker, "start", "--attach", name], log_file, request.timeout
                )
            if exit_code == 0:
                for decl in request.exports:
                    destination = host_path(outputs, decl.path)
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    # Missing exports are reported by the orchestrator
                    _run_logged(
                        [docker, "cp", f"{name}:{decl.path}", str(destination)],
                        log_file,
                        300,
                    )
                exit_code = _run_logged(
                    [
                        docker,
                        "commit",
                        name,
                        stage_image_tag(request.stage_id, self.image_prefix),
                    ],
                    log_file,
                    300,
                )
        except subprocess.TimeoutExpired as e:
            log_file.write(f"\n# TIMEOUT after {request.timeout} seconds\n")
            log_file.close()
            raise ExecutorError(
                f"Stage timed out after {request.timeout} seconds",
                stage_id=request.stage_id,
                exit_code=-1,
                log_path=str(log_path),
                code=EXECUTOR_TIMEOUT,
            ) from e
        except OSError as e:
            log_file.close()
            raise ExecutorError(
                f"Failed to execute {docker}: {e}",
                stage_id=request.stage_id,
                log_path=str(log_path),
            ) from e
        finally:
            if created:
                subprocess.run(
                    [docker, "rm", "--force", name],
                    capture_output=True,
                    check=False,
                )

        finished_at = self._close_log(log_file, started_at, exit_code)
        success = exit_code == 0
        if not success:
            logger.error(
                "Stage %s failed with exit code %d. See log: %s",
                request.stage_id,
                exit_code,
                log_path,
            )
        return StageExecution(
            success=success,
            exit_code=exit_code,
            artifacts=collect_exports(outputs, request.exports) if success else {},
            log_path=log_path,
            started_at=started_at,
            finished_at=finished_at,
            error_message=(
                None if success else f"Stage failed with exit code {exit_code}"
            ),
        )

    def run_check(
        self,
        check: VerificationCheck,
        platform: PlatformTarget,
        timeout: int | None = None,
    ) -> CheckExecution:
        """Run a check in a throwaway container of the committed stage image.

        Raises:
            ExecutorError: If the docker CLI cannot be started.
        """
        cmd = compose_check_command(
            check, platform, self.docker_binary, self.image_prefix
        )
        start = time.monotonic()
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return CheckExecution(
                exit_code=-1,
                output=f"check timed out after {timeout} seconds",
                duration=time.monotonic() - start,
            )
        except OSError as e:
            raise ExecutorError(
                f"Failed to execute {self.docker_binary}: {e}",
                stage_id=check.target_stage_id,
            ) from e
        return CheckExecution(
            exit_code=result.returncode,
            output=(result.stdout or "") + (result.stderr or ""),
            duration=time.monotonic() - start,
        )


__all__ = [
    "HASH_CHUNK_SIZE",
    "BuildExecutor",
    "CheckExecution",
    "DockerExecutor",
    "LocalExecutor",
    "StageExecution",
    "StageRequest",
    "collect_exports",
    "collect_transfers",
    "compose_check_command",
    "compose_create_command",
    "compute_file_hash",
    "compute_path_hash",
    "container_name",
    "copy_transfers",
    "copy_tree_item",
    "host_path",
    "stage_image_tag",
]
