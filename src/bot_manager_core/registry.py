from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .models import BOT_STATUSES, BotConfig

logger = logging.getLogger(__name__)

Mutator = Callable[[BotConfig], None]


class BotRegistry:
    """Bot configurations persisted as one JSON document.

    Reads always reparse the file. Every write goes through a single lock so
    read-modify-write cycles never interleave.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.error("Failed to parse bot registry %s: %s", self._path, e)
            raise
        bots = data.get("bots") if isinstance(data, dict) else None
        return bots if isinstance(bots, dict) else {}

    def _write(self, bots: Dict[str, Dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".bots-", suffix=".json", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"bots": bots}, f, indent=2)
            os.replace(tmp, self._path)
        except BaseException:
            _unlink_quietly(tmp)
            raise

    def list(self) -> List[BotConfig]:
        return [BotConfig.from_dict(raw) for raw in self._read().values()]

    def get(self, bot_id: str) -> Optional[BotConfig]:
        raw = self._read().get(bot_id)
        return BotConfig.from_dict(raw) if raw is not None else None

    async def put(self, bot: BotConfig) -> BotConfig:
        async with self._write_lock:
            bots = self._read()
            bots[bot.id] = bot.to_dict()
            self._write(bots)
        return bot

    async def update(self, bot_id: str, mutate: Mutator) -> Optional[BotConfig]:
        """Apply mutate to the stored bot and persist it. Returns None if unknown."""
        async with self._write_lock:
            bots = self._read()
            raw = bots.get(bot_id)
            if raw is None:
                return None
            bot = BotConfig.from_dict(raw)
            mutate(bot)
            bot.touch()
            # revalidate source invariants after mutation
            bot = BotConfig.from_dict(bot.to_dict())
            bots[bot_id] = bot.to_dict()
            self._write(bots)
            return bot

    async def update_status(self, bot_id: str, status: str, container_ids: Optional[List[str]] = None) -> Optional[BotConfig]:
        if status not in BOT_STATUSES:
            raise ValueError(f"Invalid bot status '{status}'")

        def apply(bot: BotConfig) -> None:
            bot.status = status
            if container_ids is not None:
                bot.container_ids = list(container_ids)

        return await self.update(bot_id, apply)

    async def remove(self, bot_id: str) -> bool:
        async with self._write_lock:
            bots = self._read()
            if bot_id not in bots:
                return False
            del bots[bot_id]
            self._write(bots)
            return True


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
