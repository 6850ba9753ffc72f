"""CasaOS registry processing.

In ``casaos`` deployment mode the compose document is adapted to what the
platform's app registry expects, copied to the platform's metadata directory and
accompanied by the directories and ownership the platform assumes.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .compose import (
    METADATA_KEY,
    apply_platform_metadata,
    bind_sources,
    dump_compose,
    inject_identity_env,
    inject_network,
    load_compose,
    ports_to_expose,
    rewrite_host_paths,
)
from .models import DEPLOYMENT_MODES
from .runtime import ContainerRuntime, RuntimeCommandError
from .settings import Settings

logger = logging.getLogger(__name__)

Emit = Callable[[str, str], None]


class InstallCommandError(Exception):
    pass


def _log_only(message: str, severity: str) -> None:
    if severity == "warning":
        logger.warning(message)
    elif severity == "error":
        logger.error(message)
    else:
        logger.info(message)


class PlatformProcessor:
    def __init__(self, settings: Settings, runtime: ContainerRuntime) -> None:
        self._settings = settings
        self._runtime = runtime
        self._env = settings.platform

    @property
    def app_data_root(self) -> Path:
        return Path(self._env.data_root) / "AppData"

    def metadata_dir(self, app_name: str) -> Path:
        return self.app_data_root / "casaos" / "apps" / app_name

    def app_data_dir(self, app_name: str) -> Path:
        return self.app_data_root / app_name

    def process(self, doc: Dict[str, Any], app_name: str) -> Dict[str, Any]:
        """Host paths, identity env, network, ports and registry metadata, in that order."""
        rewrite_host_paths(doc, self._env.data_root)
        inject_identity_env(doc, self._env.puid, self._env.pgid)
        inject_network(doc, self._env.ref_net)
        ports_to_expose(doc)
        apply_platform_metadata(doc, app_name, self._env.ref_domain, self._env.ref_separator)
        return doc

    def process_text(self, text: str, app_name: str) -> str:
        return dump_compose(self.process(load_compose(text), app_name))

    async def _fix_ownership(self, path: Path, recursive: bool = True, mode: Optional[int] = None) -> bool:
        uid, gid = int(self._env.puid), int(self._env.pgid)
        targets: List[Path] = [path]
        if recursive and path.is_dir():
            targets.extend(path.rglob("*"))
        try:
            for target in targets:
                os.chown(target, uid, gid)
                if mode is not None:
                    os.chmod(target, mode)
            return True
        except OSError as e:
            logger.debug("Local chown of %s failed (%s), trying platform container", path, e)

        if not self._settings.platform_container:
            return False
        user = self._settings.platform_user
        args = ["exec", self._settings.platform_container, "chown"]
        if recursive:
            args.append("-R")
        args += [f"{user}:{user}", str(path)]
        try:
            await self._runtime.runner.run([self._settings.docker_bin, *args], timeout=10)
            return True
        except RuntimeCommandError as e:
            logger.debug("Platform chown of %s failed: %s", path, e.message)
            return False

    async def create_volume_directories(self, doc: Mapping[str, Any], emit: Emit = _log_only) -> List[Path]:
        prefix = str(self.app_data_root)
        created: List[Path] = []
        for source in bind_sources(doc):
            if not (source == prefix or source.startswith(prefix + "/")):
                continue
            path = Path(source)
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                emit(f"Failed to create volume directory {path}: {e}", "warning")
                continue
            if not await self._fix_ownership(path, mode=0o755):
                emit(f"Could not set ownership on {path}", "warning")
            created.append(path)
            emit(f"Created volume directory: {path}", "info")
        return created

    async def save_metadata(self, app_name: str, text: str, emit: Emit = _log_only) -> Path:
        metadata_dir = self.metadata_dir(app_name)
        metadata_dir.mkdir(parents=True, exist_ok=True)
        compose_path = metadata_dir / "docker-compose.yml"
        compose_path.write_text(text, encoding="utf-8")
        if not await self._fix_ownership(metadata_dir):
            emit(f"Could not set ownership on {metadata_dir}", "warning")
        try:
            os.chmod(compose_path, 0o644)
        except OSError as e:
            emit(f"Could not set permissions on {compose_path}: {e}", "warning")
        emit(f"Saved platform metadata to {compose_path}", "info")
        return compose_path

    async def run_install_command(self, kind: str, doc: Mapping[str, Any], emit: Emit = _log_only) -> bool:
        """Run the x-casaos pre/post install command, if any. Returns True if one ran.

        A failing pre-install command raises InstallCommandError; a failing
        post-install command is reported and ignored.
        """
        if kind not in {"pre", "post"}:
            raise ValueError(f"Unknown install command kind '{kind}'")

        metadata = doc.get(METADATA_KEY)
        if not isinstance(metadata, Mapping):
            return False
        command = metadata.get(f"{kind}-install-cmd")
        if not isinstance(command, str) or not command.strip():
            return False

        script = f"set -e\numask 022\n{command}\n"
        if self._settings.platform_container:
            args = [
                self._settings.docker_bin,
                "exec",
                "--user",
                self._settings.platform_user,
                self._settings.platform_container,
                "bash",
                "-c",
                script,
            ]
        else:
            args = ["bash", "-c", script]

        emit(f"Executing {kind}-install command...", "system")
        try:
            result = await self._runtime.runner.run(args, timeout=self._settings.install_timeout_seconds)
        except RuntimeCommandError as e:
            if kind == "pre":
                raise InstallCommandError(f"Pre-install command failed: {e.message}") from e
            emit(f"Post-install command failed (non-fatal): {e.message}", "warning")
            return True

        for line in result.stdout.splitlines():
            emit(line, "info")
        for line in result.stderr.splitlines():
            emit(line, "warning")
        emit(f"{kind}-install command completed", "success")
        return True

    async def fix_post_deploy_ownership(self, app_name: str, emit: Emit = _log_only) -> None:
        for path in (self.app_data_dir(app_name), self.metadata_dir(app_name)):
            if path.exists():
                await self._fix_ownership(path)
        emit(f"Fixed post-deploy ownership for {app_name}", "info")

    def _remove_tree(self, path: Path, label: str, emit: Emit) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
            emit(f"Removed {label}: {path}", "info")
        except OSError as e:
            emit(f"Failed to remove {label} {path}: {e}", "warning")

    def remove_metadata(self, app_name: str, emit: Emit = _log_only) -> None:
        self._remove_tree(self.metadata_dir(app_name), "platform metadata", emit)

    def remove_app_data(self, app_name: str, emit: Emit = _log_only) -> None:
        self._remove_tree(self.app_data_dir(app_name), "app data", emit)

    async def remove_project_volumes(self, app_name: str, emit: Emit = _log_only) -> List[str]:
        try:
            volumes = await self._runtime.list_volumes()
        except RuntimeCommandError as e:
            emit(f"Failed to list volumes: {e.message}", "warning")
            return []

        removed: List[str] = []
        for name in volumes:
            if not (name.startswith(app_name + "_") or name.startswith(app_name + "-")):
                continue
            try:
                await self._runtime.remove_volume(name)
                removed.append(name)
                emit(f"Removed volume {name}", "info")
            except RuntimeCommandError as e:
                emit(f"Failed to remove volume {name}: {e.message}", "warning")
        return removed


class DeploymentModeResolver:
    """Decides between ``casaos`` and ``docker`` deployment.

    Precedence: DEPLOYMENT_MODE env, a mode set by the user in config.json, then
    auto-detection of a running platform container (persisted as autoDetected).
    """

    def __init__(self, settings: Settings, runtime: ContainerRuntime) -> None:
        self._settings = settings
        self._runtime = runtime
        self._mode: Optional[str] = None

    def _load_config(self) -> Optional[Dict[str, Any]]:
        path = self._settings.config_file
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.error("Failed to load config %s: %s", path, e)
            return None
        return data if isinstance(data, dict) else None

    def _save_config(self, mode: str, auto_detected: bool) -> None:
        path = self._settings.config_file
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"deploymentMode": mode, "autoDetected": auto_detected}, indent=2), encoding="utf-8")

    async def platform_available(self) -> bool:
        if not self._settings.platform_container:
            return False
        try:
            return await self._runtime.is_container_running(self._settings.platform_container)
        except RuntimeCommandError:
            logger.info("Platform detection failed, assuming not available")
            return False

    async def resolve(self) -> str:
        if self._mode:
            return self._mode

        if self._settings.deployment_mode:
            self._mode = self._settings.deployment_mode
            return self._mode

        config = self._load_config()
        if config and not config.get("autoDetected") and config.get("deploymentMode") in DEPLOYMENT_MODES:
            self._mode = str(config["deploymentMode"])
            return self._mode

        self._mode = "casaos" if await self.platform_available() else "docker"
        self._save_config(self._mode, auto_detected=True)
        logger.info("Deployment mode: %s (auto-detected)", self._mode)
        return self._mode

    def set_mode(self, mode: str) -> str:
        if mode not in DEPLOYMENT_MODES:
            raise ValueError(f"Invalid deployment mode '{mode}'")
        self._mode = mode
        self._save_config(mode, auto_detected=False)
        logger.info("Deployment mode set to: %s", mode)
        return mode

    def reset(self) -> None:
        self._mode = None

    async def info(self) -> Dict[str, Any]:
        mode = await self.resolve()
        config = self._load_config() or {}
        return {
            "mode": mode,
            "casaosAvailable": await self.platform_available(),
            "autoDetected": bool(config.get("autoDetected", self._settings.deployment_mode is None)),
            "forcedByEnv": self._settings.deployment_mode is not None,
        }
