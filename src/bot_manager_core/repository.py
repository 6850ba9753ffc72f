from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .runtime import CommandRunner, RuntimeCommandError

logger = logging.getLogger(__name__)

BOT_SUBDIRS = ("repo", "raw", "data", "env")
MAX_LISTED_FILES = 100

_CREDENTIALS_RE = re.compile(r"//([^@/]+)@")


class RepositoryError(Exception):
    def __init__(self, code: str, message: str, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


def mask_url(url: str) -> str:
    return _CREDENTIALS_RE.sub("//***@", url)


@dataclass(frozen=True)
class RepoInfo:
    branch: str
    last_commit: str
    last_commit_message: str
    last_commit_date: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "branch": self.branch,
            "lastCommit": self.last_commit,
            "lastCommitMessage": self.last_commit_message,
            "lastCommitDate": self.last_commit_date,
        }


@dataclass(frozen=True)
class UpdateStatus:
    has_updates: bool
    behind_by: int
    ahead_by: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"hasUpdates": self.has_updates, "behindBy": self.behind_by, "aheadBy": self.ahead_by}


class RepositoryManager:
    """Per-bot working tree layout plus git operations.

    ``<bots_dir>/<id>/repo`` is the working copy, ``raw`` a pristine copy without
    ``.git``, ``data`` the bot's persistent data and ``env`` its stored variables.
    """

    def __init__(self, bots_dir: Path, runner: CommandRunner, git_bin: str = "git", timeout: float = 600.0) -> None:
        self._bots_dir = bots_dir
        self._runner = runner
        self._git = git_bin
        self._timeout = timeout

    def bot_dir(self, bot_id: str) -> Path:
        return self._bots_dir / bot_id

    def repo_path(self, bot_id: str) -> Path:
        return self.bot_dir(bot_id) / "repo"

    def raw_path(self, bot_id: str) -> Path:
        return self.bot_dir(bot_id) / "raw"

    def data_path(self, bot_id: str) -> Path:
        return self.bot_dir(bot_id) / "data"

    def env_path(self, bot_id: str) -> Path:
        return self.bot_dir(bot_id) / "env"

    def init_directories(self, bot_id: str) -> Path:
        bot_dir = self.bot_dir(bot_id)
        for sub in BOT_SUBDIRS:
            (bot_dir / sub).mkdir(parents=True, exist_ok=True)
        return bot_dir

    def remove_bot_dir(self, bot_id: str) -> None:
        bot_dir = self.bot_dir(bot_id)
        if bot_dir.exists():
            shutil.rmtree(bot_dir)

    def _is_checkout(self, bot_id: str) -> bool:
        return (self.repo_path(bot_id) / ".git").exists()

    async def _git_cmd(self, *args: str, cwd: Optional[Path] = None, timeout: Optional[float] = None) -> str:
        try:
            result = await self._runner.run([self._git, *args], cwd=cwd, timeout=timeout or self._timeout)
        except RuntimeCommandError as e:
            # stderr from git may echo the remote URL
            raise RepositoryError("GIT_FAILED", mask_url(e.message), {"command": args[0]}) from e
        return result.stdout

    async def clone(self, bot_id: str, url: str, branch: str = "main") -> Path:
        self.init_directories(bot_id)
        repo_path = self.repo_path(bot_id)
        if any(repo_path.iterdir()):
            shutil.rmtree(repo_path)
            repo_path.mkdir(parents=True)

        logger.info("Cloning %s to %s (branch: %s)", mask_url(url), repo_path, branch)
        await self._git_cmd("clone", "--branch", branch, "--single-branch", url, str(repo_path))
        self.create_raw_backup(bot_id)
        return repo_path

    async def pull(self, bot_id: str) -> None:
        repo_path = self.repo_path(bot_id)
        if not repo_path.exists():
            raise RepositoryError("NOT_FOUND", f"Repository not found for bot {bot_id}")
        if not self._is_checkout(bot_id):
            raise RepositoryError("NOT_A_REPOSITORY", f"Not a git repository: {repo_path}")

        logger.info("Pulling latest changes for bot %s", bot_id)
        await self._git_cmd("pull", "origin", cwd=repo_path)
        self.create_raw_backup(bot_id)

    def create_raw_backup(self, bot_id: str) -> None:
        raw_path = self.raw_path(bot_id)
        if raw_path.exists():
            shutil.rmtree(raw_path)
        shutil.copytree(self.repo_path(bot_id), raw_path, ignore=shutil.ignore_patterns(".git"))
        logger.debug("RAW backup for bot %s written to %s", bot_id, raw_path)

    async def info(self, bot_id: str) -> Optional[RepoInfo]:
        if not self._is_checkout(bot_id):
            return None
        repo_path = self.repo_path(bot_id)
        try:
            branch = await self._git_cmd("rev-parse", "--abbrev-ref", "HEAD", cwd=repo_path, timeout=30)
            log = await self._git_cmd("log", "-1", "--format=%h%x1f%s%x1f%cI", cwd=repo_path, timeout=30)
        except RepositoryError as e:
            logger.error("Failed to get repo info for bot %s: %s", bot_id, e.message)
            return None

        parts = log.split("\x1f")
        if len(parts) != 3:
            parts = ["unknown", "unknown", "unknown"]
        return RepoInfo(
            branch=branch.strip(),
            last_commit=parts[0] or "unknown",
            last_commit_message=parts[1] or "unknown",
            last_commit_date=parts[2] or "unknown",
        )

    async def check_updates(self, bot_id: str) -> UpdateStatus:
        if not self._is_checkout(bot_id):
            return UpdateStatus(has_updates=False, behind_by=0)
        repo_path = self.repo_path(bot_id)
        try:
            await self._git_cmd("fetch", cwd=repo_path)
            counts = await self._git_cmd(
                "rev-list", "--left-right", "--count", "HEAD...@{upstream}", cwd=repo_path, timeout=30
            )
        except RepositoryError as e:
            logger.error("Failed to check for updates for bot %s: %s", bot_id, e.message)
            return UpdateStatus(has_updates=False, behind_by=0)

        ahead, behind = parse_ahead_behind(counts)
        return UpdateStatus(has_updates=behind > 0, behind_by=behind, ahead_by=ahead)

    def list_files(self, bot_id: str) -> List[str]:
        repo_path = self.repo_path(bot_id)
        if not repo_path.exists():
            return []

        files: List[str] = []

        def walk(directory: Path, prefix: str) -> None:
            for entry in sorted(directory.iterdir(), key=lambda p: p.name):
                if entry.name.startswith(".") or entry.name == "node_modules":
                    continue
                relative = f"{prefix}/{entry.name}" if prefix else entry.name
                if entry.is_dir():
                    walk(entry, relative)
                else:
                    files.append(relative)

        walk(repo_path, "")
        return files[:MAX_LISTED_FILES]


def parse_ahead_behind(output: str) -> Tuple[int, int]:
    parts = output.split()
    if len(parts) != 2:
        return 0, 0
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return 0, 0
