from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .models import ContainerInfo

logger = logging.getLogger(__name__)

OnLine = Callable[[str], None]

KILL_GRACE_SECONDS = 5.0
_TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T[\d:.]+Z)\s(.*)$")
_MEM_RE = re.compile(r"([\d.]+)\s*(\w+)\s*/\s*([\d.]+)\s*(\w+)")
_PS_FORMAT = "{{.ID}}|{{.Names}}|{{.State}}|{{.Status}}"


class RuntimeCommandError(Exception):
    def __init__(self, code: str, message: str, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


class RuntimeTimeout(RuntimeCommandError):
    pass


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class LogLine:
    timestamp: str
    message: str


@dataclass(frozen=True)
class ContainerStats:
    cpu_percent: float
    memory_usage_mb: float
    memory_limit_mb: float


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


class CommandRunner:
    """Runs external commands as isolated subprocesses with timeouts."""

    def __init__(self, default_timeout: float = 30.0) -> None:
        self._default_timeout = default_timeout

    async def run(
        self,
        args: Sequence[str],
        timeout: Optional[float] = None,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        timeout = timeout or self._default_timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._merged_env(env),
            )
        except OSError as e:
            raise RuntimeCommandError("NOT_FOUND", f"Failed to execute {args[0]}", {"error": str(e)}) from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            raise RuntimeTimeout("TIMEOUT", f"Command timed out after {timeout:g}s", {"args": list(args)})

        result = CommandResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout_bytes.decode(errors="replace").strip(),
            stderr=stderr_bytes.decode(errors="replace").strip(),
        )
        if check and result.returncode != 0:
            raise RuntimeCommandError(
                "EXIT",
                f"Command failed: {result.stderr or result.stdout or 'exit code ' + str(result.returncode)}",
                {"args": list(args), "returncode": result.returncode},
            )
        return result

    async def stream(
        self,
        args: Sequence[str],
        on_line: Optional[OnLine] = None,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> None:
        """Run a long command, forwarding each output line as it arrives."""
        timeout = timeout or self._default_timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._merged_env(env),
            )
        except OSError as e:
            raise RuntimeCommandError("NOT_FOUND", f"Failed to execute {args[0]}", {"error": str(e)}) from e

        async def pump() -> None:
            assert proc.stdout is not None
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                # progress output uses carriage returns to redraw lines
                for line in re.split(r"[\r\n]+", raw.decode(errors="replace")):
                    if line.strip() and on_line is not None:
                        on_line(line)
            await proc.wait()

        try:
            await asyncio.wait_for(pump(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            raise RuntimeTimeout("TIMEOUT", f"Command timed out after {timeout:g}s", {"args": list(args)})

        if proc.returncode != 0:
            raise RuntimeCommandError(
                "EXIT",
                f"{' '.join(args[:2])} failed with exit code {proc.returncode}",
                {"args": list(args), "returncode": proc.returncode},
            )

    @staticmethod
    def _merged_env(env: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
        if env is None:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged


class ContainerRuntime:
    """Docker CLI wrapper: containers, images, volumes and compose projects."""

    def __init__(
        self,
        runner: CommandRunner,
        docker_bin: str = "docker",
        quick_timeout: float = 30.0,
        build_timeout: float = 600.0,
    ) -> None:
        self._runner = runner
        self._docker = docker_bin
        self._quick_timeout = quick_timeout
        self._build_timeout = build_timeout
        self._buildx: Optional[bool] = None

    @property
    def runner(self) -> CommandRunner:
        return self._runner

    async def _docker_cmd(self, *args: str, timeout: Optional[float] = None, check: bool = True) -> CommandResult:
        return await self._runner.run([self._docker, *args], timeout=timeout or self._quick_timeout, check=check)

    async def check_connection(self) -> bool:
        try:
            await self._docker_cmd("info", timeout=5)
            return True
        except RuntimeCommandError as e:
            logger.error("Docker connection failed: %s", e.message)
            return False

    async def _build_env(self) -> Dict[str, str]:
        if self._buildx is None:
            result = await self._docker_cmd("buildx", "version", timeout=5, check=False)
            self._buildx = result.returncode == 0
        return {"DOCKER_BUILDKIT": "1"} if self._buildx else {}

    async def list_containers(self, labels: Optional[Mapping[str, str]] = None) -> List[ContainerInfo]:
        args = ["ps", "-a"]
        for key, value in (labels or {}).items():
            args += ["--filter", f"label={key}={value}"]
        args += ["--format", _PS_FORMAT]
        result = await self._docker_cmd(*args)

        containers: List[ContainerInfo] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            parts = (line.split("|") + ["", "", "", ""])[:4]
            containers.append(ContainerInfo(id=parts[0], name=parts[1], state=parts[2], status=parts[3]))
        return containers

    async def is_container_running(self, name: str) -> bool:
        result = await self._docker_cmd("ps", "--filter", f"name={name}", "--format", "{{.Names}}", check=False)
        return result.returncode == 0 and name in result.stdout.split()

    async def create_container(
        self,
        name: str,
        image: str,
        env: Optional[Mapping[str, str]] = None,
        labels: Optional[Mapping[str, str]] = None,
        binds: Optional[Mapping[str, str]] = None,
        network: Optional[str] = None,
        restart: str = "unless-stopped",
        memory: str = "512m",
        cpus: str = "0.5",
    ) -> str:
        args = ["create", "--name", name, "--restart", restart, "--memory", memory, "--cpus", cpus]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        for host_path, container_path in (binds or {}).items():
            args += ["-v", f"{host_path}:{container_path}"]
        if network:
            args += ["--network", network]
        args.append(image)
        result = await self._docker_cmd(*args)
        return result.stdout.splitlines()[-1].strip() if result.stdout else ""

    async def start_container(self, container_id: str) -> None:
        await self._docker_cmd("start", container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        await self._docker_cmd("stop", "-t", str(timeout), container_id, timeout=timeout + 5)

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        args = ["rm", "-v"]
        if force:
            args.append("-f")
        args.append(container_id)
        await self._docker_cmd(*args)

    async def container_logs(self, container_id: str, tail: int = 100) -> List[LogLine]:
        result = await self._docker_cmd("logs", "--tail", str(tail), "--timestamps", container_id)
        lines: List[LogLine] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            match = _TIMESTAMP_RE.match(line)
            if match:
                lines.append(LogLine(timestamp=match.group(1), message=match.group(2)))
            else:
                now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
                lines.append(LogLine(timestamp=now, message=line))
        return lines

    async def container_stats(self, container_id: str) -> ContainerStats:
        result = await self._docker_cmd(
            "stats", "--no-stream", "--format", "{{.CPUPerc}}|{{.MemUsage}}", container_id
        )
        return parse_stats(result.stdout)

    async def build_image(
        self,
        context: Path,
        tag: str,
        dockerfile: str = "Dockerfile",
        on_line: Optional[OnLine] = None,
    ) -> None:
        args = [self._docker, "build", "-t", tag, "-f", str(context / dockerfile), str(context)]
        logger.info("Building image %s from %s", tag, context)
        await self._runner.stream(args, on_line=on_line, timeout=self._build_timeout, env=await self._build_env())

    async def pull_image(self, ref: str, on_line: Optional[OnLine] = None) -> None:
        logger.info("Pulling image %s", ref)
        await self._runner.stream([self._docker, "pull", ref], on_line=on_line, timeout=self._build_timeout)

    async def image_exists(self, ref: str) -> bool:
        result = await self._docker_cmd("image", "inspect", ref, check=False)
        return result.returncode == 0

    async def remove_image(self, ref: str) -> None:
        await self._docker_cmd("rmi", "-f", ref)

    async def list_volumes(self) -> List[str]:
        result = await self._docker_cmd("volume", "ls", "--format", "{{.Name}}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def remove_volume(self, name: str) -> None:
        await self._docker_cmd("volume", "rm", "-f", name)

    async def compose_up(
        self,
        compose_path: Path,
        project: str,
        on_line: Optional[OnLine] = None,
        build: bool = False,
    ) -> None:
        args = [self._docker, "compose", "-f", str(compose_path), "-p", project, "up", "-d"]
        if build:
            args.append("--build")
        logger.info("Running compose up for project %s", project)
        await self._runner.stream(args, on_line=on_line, timeout=self._build_timeout, env=await self._build_env())

    async def compose_down(self, compose_path: Path, project: str) -> None:
        await self._runner.run(
            [self._docker, "compose", "-f", str(compose_path), "-p", project, "down"],
            timeout=max(self._quick_timeout, 60.0),
        )


def _to_mb(value: float, unit: str) -> float:
    unit = unit.lower()
    if unit.startswith("g"):
        return value * 1024
    if unit.startswith("k"):
        return value / 1024
    if unit == "b":
        return value / (1024 * 1024)
    return value


def parse_stats(output: str) -> ContainerStats:
    cpu_str, _, mem_str = output.partition("|")
    try:
        cpu = float(cpu_str.strip().rstrip("%") or 0)
    except ValueError:
        cpu = 0.0

    usage = limit = 0.0
    match = _MEM_RE.search(mem_str)
    if match:
        usage = _to_mb(float(match.group(1)), match.group(2))
        limit = _to_mb(float(match.group(3)), match.group(4))

    return ContainerStats(
        cpu_percent=round(cpu, 2),
        memory_usage_mb=round(usage, 2),
        memory_limit_mb=round(limit, 2),
    )
