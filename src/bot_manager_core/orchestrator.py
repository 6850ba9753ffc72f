from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .buildlog import BuildLog, BuildLogRegistry
from .casaos import DeploymentModeResolver, PlatformProcessor
from .compose import (
    MANAGED_BY,
    adapt_existing_compose,
    dump_compose,
    extract_build_target,
    find_compose_file,
    generate_compose,
    generate_image_compose,
    inject_labels,
    load_compose,
    substitute_build_target,
)
from .credentials import SecretStore, is_sensitive, parse_env_example
from .detection import detect_bot_type, generate_dockerfile
from .models import BotConfig, DetectionResult, OperationResult, app_name_for, image_name_for
from .registry import BotRegistry
from .repository import RepositoryManager
from .runtime import ContainerRuntime, RuntimeCommandError
from .settings import Settings
from .substitution import build_variables, ensure_tokens, validate_required

logger = logging.getLogger(__name__)

COMPOSE_FILENAME = "docker-compose.yml"
DATA_MOUNT = "/app/data"

NOT_FOUND = "Bot not found"
NOT_RUNNING = "Bot is not running"
ALREADY_RUNNING = "Bot is already running"


class BotGone(LookupError):
    pass


@dataclass(frozen=True)
class BuildOutcome:
    compose_path: Path
    app_name: str
    build_target: Optional[str]


def belongs_to(container_name: str, bot_id: str) -> bool:
    app_name = app_name_for(bot_id)
    return (
        container_name == app_name
        or container_name.startswith((app_name + "-", app_name + "_"))
        or f"-{bot_id}-" in container_name
    )


class BotManager:
    """Drives each bot through build, start and stop.

    Every public coroutine is an operation boundary: failures are logged, written
    to the bot's build log, reflected in the bot status and returned as an
    OperationResult. Operations on the same bot are serialized by a per-bot lock.
    """

    def __init__(
        self,
        settings: Settings,
        registry: BotRegistry,
        runtime: ContainerRuntime,
        repository: RepositoryManager,
        credentials: SecretStore,
        logs: BuildLogRegistry,
        platform: PlatformProcessor,
        modes: DeploymentModeResolver,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._runtime = runtime
        self._repository = repository
        self._credentials = credentials
        self._logs = logs
        self._platform = platform
        self._modes = modes
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def logs(self) -> BuildLogRegistry:
        return self._logs

    def _lock(self, bot_id: str) -> asyncio.Lock:
        lock = self._locks.get(bot_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[bot_id] = lock
        return lock

    def _fresh(self, bot_id: str) -> BotConfig:
        bot = self._registry.get(bot_id)
        if bot is None:
            raise BotGone(NOT_FOUND)
        return bot

    def compose_path(self, bot_id: str) -> Path:
        return self._repository.bot_dir(bot_id) / COMPOSE_FILENAME

    def effective_env(self, bot: BotConfig) -> Dict[str, str]:
        env = dict(bot.env_vars)
        env.update(self._credentials.get_all(bot.id))
        return env

    def _deploy_env(self, bot: BotConfig) -> Dict[str, str]:
        env = self.effective_env(bot)
        env["BOT_MANAGER_UPDATE_TOKEN"] = bot.update_token or ""
        return env

    async def _fail(self, bot_id: str, log: BuildLog, label: str, error: Exception) -> OperationResult:
        logger.error("%s failed for bot %s: %s", label, bot_id, error, exc_info=error)
        log.append(f"{label} failed: {error}", "error")
        if not isinstance(error, BotGone):
            await self._registry.update_status(bot_id, "error")
        return OperationResult.fail(str(error))

    # build

    async def _build(self, bot: BotConfig, log: BuildLog) -> BuildOutcome:
        app_name = app_name_for(bot.id)
        image = image_name_for(bot.id)
        log.append(f"Building {bot.name}", "system")
        await self._registry.update_status(bot.id, "building")

        if ensure_tokens(bot):
            def keep_tokens(stored: BotConfig) -> None:
                stored.auth_hash = stored.auth_hash or bot.auth_hash
                stored.update_token = stored.update_token or bot.update_token

            await self._registry.update(bot.id, keep_tokens)

        bot_dir = self._repository.init_directories(bot.id)
        mode = await self._modes.resolve()
        network = self._settings.platform.ref_net
        deploy_bot = dataclasses.replace(bot, env_vars=self._deploy_env(bot))

        detection: Optional[DetectionResult] = None
        build_target: Optional[str] = None
        repo_path = self._repository.repo_path(bot.id)

        if bot.source_type == "git":
            if not (repo_path / ".git").exists():
                log.append("Cloning repository...", "info")
                await self._repository.clone(bot.id, bot.url or "", bot.branch)

            detection = detect_bot_type(repo_path)
            log.append(
                f"Detected {detection.type} bot (dockerfile: {detection.has_dockerfile}, "
                f"compose: {detection.has_compose}, database: {detection.has_database})",
                "info",
            )

            compose_file = find_compose_file(repo_path)
            if compose_file is not None:
                log.append(f"Using repository compose file {compose_file.name}", "info")
                text = compose_file.read_text(encoding="utf-8")
                for name in validate_required(text, deploy_bot):
                    log.append(f"Required variable {name} is not set", "warning")
                variables = build_variables(deploy_bot, self._settings.platform)
                doc = adapt_existing_compose(text, deploy_bot, variables, network)
                build_target = extract_build_target(doc)
                if build_target:
                    log.append(f"Service '{build_target}' will be built from source", "info")
                    substitute_build_target(doc, build_target, repo_path, image)
            else:
                if not detection.has_dockerfile:
                    log.append(f"Generating Dockerfile for {detection.type} bot", "info")
                    (repo_path / "Dockerfile").write_text(generate_dockerfile(detection), encoding="utf-8")
                doc = generate_compose(deploy_bot, detection, bot_dir, network)
                build_target = "bot"
                substitute_build_target(doc, build_target, repo_path, image)
        else:
            log.append(f"Using image {bot.image_ref}", "info")
            doc = generate_image_compose(deploy_bot, bot_dir, network)

        inject_labels(doc, bot)
        if mode == "casaos":
            self._platform.process(doc, app_name)

        text = dump_compose(doc)
        compose_path = bot_dir / COMPOSE_FILENAME
        compose_path.write_text(text, encoding="utf-8")
        log.append(f"Wrote compose file {compose_path}", "info")

        if mode == "casaos":
            await self._platform.create_volume_directories(doc, log.append)
            await self._platform.save_metadata(app_name, text, log.append)
            await self._platform.run_install_command("pre", doc, log.append)

        if build_target:
            log.append(f"Building image {image}...", "system")
            await self._runtime.build_image(repo_path, image, on_line=lambda line: log.append(line, "info"))
            log.append(f"Image {image} built", "success")

        def record(stored: BotConfig) -> None:
            stored.app_name = app_name
            stored.status = "stopped"
            if detection is not None:
                stored.bot_type = detection.type
                stored.has_database = detection.has_database

        await self._registry.update(bot.id, record)
        log.append("Build completed", "success")
        return BuildOutcome(compose_path=compose_path, app_name=app_name, build_target=build_target)

    async def build(self, bot_id: str) -> OperationResult:
        if self._registry.get(bot_id) is None:
            return OperationResult.fail(NOT_FOUND)

        async with self._lock(bot_id):
            log = self._logs.get(bot_id)
            log.clear()
            try:
                bot = self._fresh(bot_id)
                if bot.status == "running":
                    return OperationResult.fail("Stop the bot before rebuilding it")
                outcome = await self._build(bot, log)
            except Exception as e:  # noqa: BLE001
                return await self._fail(bot_id, log, "Build", e)

        return OperationResult.ok(
            appName=outcome.app_name,
            composePath=str(outcome.compose_path),
            buildTarget=outcome.build_target,
        )

    # start

    async def _discover_containers(self, bot_id: str) -> List[str]:
        containers = await self._runtime.list_containers({"managed-by": MANAGED_BY})
        return [c.id for c in containers if belongs_to(c.name, bot_id)]

    async def _start_direct(self, bot: BotConfig, log: BuildLog) -> List[str]:
        app_name = app_name_for(bot.id)

        def on_line(line: str) -> None:
            log.append(line, "info")

        if bot.source_type == "image":
            image = bot.image_ref or ""
            log.append(f"Pulling image {image}...", "system")
            await self._runtime.pull_image(image, on_line=on_line)
        else:
            image = image_name_for(bot.id)
            if not await self._runtime.image_exists(image):
                log.append(f"Image {image} missing, rebuilding", "warning")
                await self._runtime.build_image(self._repository.repo_path(bot.id), image, on_line=on_line)

        for stale in await self._runtime.list_containers({"bot-id": bot.id}):
            if stale.name == app_name:
                await self._runtime.remove_container(stale.id, force=True)

        data_path = self._repository.data_path(bot.id)
        data_path.mkdir(parents=True, exist_ok=True)
        container_id = await self._runtime.create_container(
            app_name,
            image,
            env=self._deploy_env(bot),
            labels={"managed-by": MANAGED_BY, "bot-id": bot.id, "bot-name": bot.name},
            binds={str(data_path): DATA_MOUNT},
        )
        log.append(f"Created container {container_id[:12]}", "info")
        await self._runtime.start_container(container_id)
        return [container_id]

    async def _start(self, bot: BotConfig, log: BuildLog) -> List[str]:
        app_name = app_name_for(bot.id)
        compose_path = self.compose_path(bot.id)
        if not compose_path.exists():
            log.append("No compose file yet, building first", "system")
            await self._build(bot, log)
            bot = self._fresh(bot.id)

        mode = await self._modes.resolve()
        await self._registry.update_status(bot.id, "starting")
        log.append(f"Starting {bot.name} ({mode} mode)", "system")

        if mode == "casaos":
            doc = load_compose(compose_path.read_text(encoding="utf-8"))
            await self._runtime.compose_up(compose_path, app_name, on_line=lambda line: log.append(line, "info"))
            if not bot.has_been_started:
                await self._platform.run_install_command("post", doc, log.append)
            await self._platform.fix_post_deploy_ownership(app_name, log.append)
            container_ids = await self._discover_containers(bot.id)
        else:
            container_ids = await self._start_direct(bot, log)

        def mark_running(stored: BotConfig) -> None:
            stored.status = "running"
            stored.container_ids = list(container_ids)
            stored.has_been_started = True

        await self._registry.update(bot.id, mark_running)
        log.append(f"Bot started ({len(container_ids)} container(s))", "success")
        return container_ids

    async def start(self, bot_id: str) -> OperationResult:
        if self._registry.get(bot_id) is None:
            return OperationResult.fail(NOT_FOUND)

        async with self._lock(bot_id):
            log = self._logs.get(bot_id)
            log.clear()
            try:
                bot = self._fresh(bot_id)
                if bot.status == "running":
                    return OperationResult.fail(ALREADY_RUNNING)
                container_ids = await self._start(bot, log)
            except Exception as e:  # noqa: BLE001
                return await self._fail(bot_id, log, "Start", e)

        return OperationResult.ok(containerIds=container_ids)

    # stop

    async def _remove_containers(self, container_ids: List[str], log: BuildLog) -> None:
        for container_id in container_ids:
            try:
                await self._runtime.stop_container(container_id)
            except RuntimeCommandError as e:
                logger.warning("Failed to stop container %s: %s", container_id, e.message)
                log.append(f"Failed to stop container {container_id[:12]}: {e.message}", "warning")
            try:
                await self._runtime.remove_container(container_id, force=True)
            except RuntimeCommandError as e:
                logger.warning("Failed to remove container %s: %s", container_id, e.message)
                log.append(f"Failed to remove container {container_id[:12]}: {e.message}", "warning")

    async def _stop(self, bot: BotConfig, log: BuildLog) -> None:
        await self._registry.update_status(bot.id, "stopping")
        mode = await self._modes.resolve()
        compose_path = self.compose_path(bot.id)

        if mode == "casaos" and compose_path.exists():
            log.append("Stopping compose project", "system")
            await self._runtime.compose_down(compose_path, app_name_for(bot.id))
        else:
            await self._remove_containers(bot.container_ids, log)

        await self._registry.update_status(bot.id, "stopped", [])
        log.append("Bot stopped", "success")

    async def stop(self, bot_id: str) -> OperationResult:
        if self._registry.get(bot_id) is None:
            return OperationResult.fail(NOT_FOUND)

        async with self._lock(bot_id):
            log = self._logs.get(bot_id)
            try:
                bot = self._fresh(bot_id)
                if bot.status != "running":
                    return OperationResult.fail(NOT_RUNNING)
                await self._stop(bot, log)
            except Exception as e:  # noqa: BLE001
                return await self._fail(bot_id, log, "Stop", e)

        return OperationResult.ok()

    async def restart(self, bot_id: str) -> OperationResult:
        stopped = await self.stop(bot_id)
        if not stopped.success and stopped.error != NOT_RUNNING:
            return stopped
        return await self.start(bot_id)

    async def pull_and_rebuild(self, bot_id: str) -> OperationResult:
        bot = self._registry.get(bot_id)
        if bot is None:
            return OperationResult.fail(NOT_FOUND)
        if bot.source_type != "git":
            return OperationResult.fail("Cannot pull updates for image source type, rebuild pulls the image instead")

        async with self._lock(bot_id):
            log = self._logs.get(bot_id)
            log.clear()
            try:
                bot = self._fresh(bot_id)
                was_running = bot.status == "running"
                if was_running:
                    await self._stop(bot, log)

                log.append("Pulling latest changes...", "system")
                await self._repository.pull(bot_id)

                image = image_name_for(bot_id)
                if await self._runtime.image_exists(image):
                    try:
                        await self._runtime.remove_image(image)
                        log.append(f"Removed cached image {image}", "info")
                    except RuntimeCommandError as e:
                        log.append(f"Failed to remove cached image {image}: {e.message}", "warning")

                await self._build(self._fresh(bot_id), log)
                if was_running:
                    await self._start(self._fresh(bot_id), log)
            except Exception as e:  # noqa: BLE001
                return await self._fail(bot_id, log, "Update", e)

        return OperationResult.ok(restarted=was_running)

    # registry-facing operations

    def get_bot(self, bot_id: str) -> Optional[BotConfig]:
        return self._registry.get(bot_id)

    def list_bots(self) -> List[BotConfig]:
        return self._registry.list()

    def _merge_public_env(self, bot: BotConfig, values: Mapping[str, str]) -> None:
        for key, value in values.items():
            if is_sensitive(key):
                bot.env_vars.pop(key, None)
            else:
                bot.env_vars[key] = str(value)

    async def create_bot(
        self,
        name: str,
        source_type: str = "git",
        url: Optional[str] = None,
        branch: Optional[str] = None,
        image_ref: Optional[str] = None,
        env_vars: Optional[Mapping[str, str]] = None,
    ) -> OperationResult:
        """Register a new bot. Invalid requests raise ValueError before anything is written."""
        if not name or not name.strip():
            raise ValueError("Name is required")

        bot_id = str(uuid.uuid4())
        bot = BotConfig(
            id=bot_id,
            name=name.strip(),
            source_type=source_type,
            url=url,
            branch=branch or "main",
            image_ref=image_ref,
        )
        ensure_tokens(bot)

        try:
            self._repository.init_directories(bot_id)
            if bot.source_type == "git":
                await self._repository.clone(bot_id, bot.url or "", bot.branch)
                detection = detect_bot_type(self._repository.repo_path(bot_id))
                bot.bot_type = detection.type
                bot.has_database = detection.has_database
            if env_vars:
                self._credentials.set_many(bot_id, env_vars)
                self._merge_public_env(bot, env_vars)
            await self._registry.put(bot)
        except Exception as e:  # noqa: BLE001
            logger.error("Failed to create bot %s: %s", bot_id, e, exc_info=e)
            try:
                self._repository.remove_bot_dir(bot_id)
            except OSError as cleanup_error:
                logger.warning("Failed to clean up %s: %s", bot_id, cleanup_error)
            return OperationResult.fail(str(e))

        logger.info("Bot %s created (sourceType: %s)", bot_id, bot.source_type)
        return OperationResult.ok(bot=bot.to_public_dict())

    async def update_bot(
        self,
        bot_id: str,
        name: Optional[str] = None,
        branch: Optional[str] = None,
        env_vars: Optional[Mapping[str, str]] = None,
    ) -> OperationResult:
        if self._registry.get(bot_id) is None:
            return OperationResult.fail(NOT_FOUND)

        if env_vars:
            self._credentials.set_many(bot_id, env_vars)

        def apply(bot: BotConfig) -> None:
            if name:
                bot.name = name
            if branch:
                bot.branch = branch
            if env_vars:
                self._merge_public_env(bot, env_vars)

        updated = await self._registry.update(bot_id, apply)
        if updated is None:
            return OperationResult.fail(NOT_FOUND)
        return OperationResult.ok(bot=updated.to_public_dict())

    async def delete_bot(self, bot_id: str) -> OperationResult:
        bot = self._registry.get(bot_id)
        if bot is None:
            return OperationResult.fail(NOT_FOUND)

        async with self._lock(bot_id):
            log = self._logs.get(bot_id)
            app_name = app_name_for(bot_id)
            try:
                bot = self._fresh(bot_id)
                mode = await self._modes.resolve()
                compose_path = self.compose_path(bot_id)

                if mode == "casaos" and compose_path.exists():
                    try:
                        await self._runtime.compose_down(compose_path, app_name)
                    except RuntimeCommandError as e:
                        logger.warning("compose down failed for %s: %s", app_name, e.message)
                await self._remove_containers(bot.container_ids, log)

                if mode == "casaos":
                    self._platform.remove_metadata(app_name, log.append)
                    self._platform.remove_app_data(app_name, log.append)
                    await self._platform.remove_project_volumes(app_name, log.append)

                if bot.source_type == "git":
                    try:
                        if await self._runtime.image_exists(image_name_for(bot_id)):
                            await self._runtime.remove_image(image_name_for(bot_id))
                    except RuntimeCommandError as e:
                        logger.warning("Failed to remove image for %s: %s", bot_id, e.message)

                try:
                    self._credentials.purge(bot_id)
                except OSError as e:
                    logger.warning("Failed to remove stored credentials of bot %s: %s", bot_id, e)
                try:
                    self._repository.remove_bot_dir(bot_id)
                except OSError as e:
                    logger.warning("Failed to remove directory of bot %s: %s", bot_id, e)

                await self._registry.remove(bot_id)
            except Exception as e:  # noqa: BLE001
                logger.error("Failed to delete bot %s: %s", bot_id, e, exc_info=e)
                return OperationResult.fail(str(e))
            finally:
                self._logs.remove(bot_id)

        self._locks.pop(bot_id, None)
        logger.info("Bot %s deleted", bot_id)
        return OperationResult.ok()

    # runtime queries

    async def get_logs(self, bot_id: str, tail: int = 100) -> OperationResult:
        bot = self._registry.get(bot_id)
        if bot is None:
            return OperationResult.fail(NOT_FOUND)
        if not bot.container_ids:
            return OperationResult.fail("Bot has no containers")

        per_container = max(1, -(-tail // len(bot.container_ids)))
        lines: List[str] = []
        for container_id in bot.container_ids:
            try:
                entries = await self._runtime.container_logs(container_id, per_container)
            except RuntimeCommandError as e:
                logger.warning("Failed to get logs from container %s: %s", container_id, e.message)
                continue
            for entry in entries:
                lines.append(f"[{entry.timestamp}] [{container_id[:12]}] {entry.message}")

        lines.sort()
        return OperationResult.ok(logs=lines[-tail:])

    async def get_stats(self, bot_id: str) -> OperationResult:
        bot = self._registry.get(bot_id)
        if bot is None:
            return OperationResult.fail(NOT_FOUND)
        if not bot.container_ids or bot.status != "running":
            return OperationResult.fail(NOT_RUNNING)

        cpu = usage = limit = 0.0
        for container_id in bot.container_ids:
            try:
                stats = await self._runtime.container_stats(container_id)
            except RuntimeCommandError as e:
                logger.warning("Failed to get stats from container %s: %s", container_id, e.message)
                continue
            cpu += stats.cpu_percent
            usage += stats.memory_usage_mb
            limit += stats.memory_limit_mb

        return OperationResult.ok(
            stats={"cpuPercent": round(cpu, 2), "memoryUsageMB": round(usage, 2), "memoryLimitMB": round(limit, 2)}
        )

    async def sync_container_states(self) -> int:
        """Reconcile bots marked running with the containers that actually run."""
        containers = await self._runtime.list_containers({"managed-by": MANAGED_BY})
        changed = 0
        for bot in self._registry.list():
            if bot.status != "running":
                continue
            running = [c.id for c in containers if belongs_to(c.name, bot.id) and c.state == "running"]
            if not running:
                logger.info("Bot %s has no running containers, marking stopped", bot.id)
                await self._registry.update_status(bot.id, "stopped", [])
                changed += 1
            elif sorted(running) != sorted(bot.container_ids):
                logger.info(
                    "Bot %s container set changed: %d -> %d", bot.id, len(bot.container_ids), len(running)
                )
                await self._registry.update_status(bot.id, "running", running)
                changed += 1
        logger.info("Container state sync complete (%d updated)", changed)
        return changed

    # repository and env

    async def repo_info(self, bot_id: str) -> Optional[Dict[str, Any]]:
        bot = self._registry.get(bot_id)
        if bot is None or bot.source_type != "git":
            return None
        info = await self._repository.info(bot_id)
        return info.to_dict() if info else None

    async def check_updates(self, bot_id: str) -> OperationResult:
        bot = self._registry.get(bot_id)
        if bot is None:
            return OperationResult.fail(NOT_FOUND)
        if bot.source_type != "git":
            return OperationResult.ok(hasUpdates=False, behindBy=0, aheadBy=0)
        status = await self._repository.check_updates(bot_id)
        return OperationResult.ok(**status.to_dict())

    def list_files(self, bot_id: str) -> OperationResult:
        bot = self._registry.get(bot_id)
        if bot is None:
            return OperationResult.fail(NOT_FOUND)
        if bot.source_type != "git":
            return OperationResult.ok(files=[])
        return OperationResult.ok(files=self._repository.list_files(bot_id))

    def get_env(self, bot_id: str) -> OperationResult:
        bot = self._registry.get(bot_id)
        if bot is None:
            return OperationResult.fail(NOT_FOUND)

        example = []
        if bot.source_type == "git":
            example = [e.to_dict() for e in parse_env_example(self._repository.repo_path(bot_id))]
        missing = self._credentials.missing_required(bot_id)
        return OperationResult.ok(
            envVars=[i.to_dict() for i in self._credentials.info(bot_id)],
            envExample=example,
            valid=not missing,
            missing=missing,
        )

    async def set_env(self, bot_id: str, values: Mapping[str, str]) -> OperationResult:
        result = await self.update_bot(bot_id, env_vars=values)
        if not result.success:
            return result
        missing = self._credentials.missing_required(bot_id)
        return OperationResult.ok(valid=not missing, missing=missing)

    async def delete_env(self, bot_id: str, key: str) -> OperationResult:
        if self._registry.get(bot_id) is None:
            return OperationResult.fail(NOT_FOUND)
        self._credentials.delete(bot_id, key)

        def drop(bot: BotConfig) -> None:
            bot.env_vars.pop(key, None)

        await self._registry.update(bot_id, drop)
        return OperationResult.ok()
