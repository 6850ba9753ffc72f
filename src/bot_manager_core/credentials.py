"""Per-bot environment variable storage.

Values whose key looks sensitive are encrypted at rest with Fernet; everything
else is stored in clear. Storage lives in ``<bot_dir>/env/storage.json`` as
``{"vars": {...}, "encrypted": {...}}``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = ("DISCORD_TOKEN", "CLIENT_ID", "GUILD_ID")
SENSITIVE_MARKERS = ("DISCORD_TOKEN", "API_KEY", "SECRET", "PASSWORD", "TOKEN")

_ENV_LINE_RE = re.compile(r"^([A-Z_][A-Z0-9_]*)=(.*)$", re.IGNORECASE)


def is_sensitive(key: str) -> bool:
    upper = key.upper()
    return any(marker in upper for marker in SENSITIVE_MARKERS)


def mask_value(value: str) -> str:
    if not value or len(value) < 8:
        return "****"
    return value[:4] + "****" + value[-4:]


def _fernet_key(secret: str) -> bytes:
    """Accept a ready Fernet key, otherwise derive one from the passphrase."""
    raw = secret.encode()
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32:
            return raw
    except (ValueError, TypeError):
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


def load_or_create_key(key_file: Path) -> bytes:
    if key_file.exists():
        logger.info("Loading encryption key from %s", key_file)
        return key_file.read_bytes().strip()

    logger.info("Generating new encryption key at %s", key_file)
    key = Fernet.generate_key()
    key_file.parent.mkdir(parents=True, exist_ok=True)
    key_file.write_bytes(key)
    key_file.chmod(0o600)
    return key


@dataclass(frozen=True)
class EnvVarInfo:
    key: str
    value: str
    sensitive: bool
    required: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "value": self.value, "sensitive": self.sensitive, "required": self.required}


@dataclass(frozen=True)
class EnvExampleEntry:
    key: str
    description: str
    default_value: str

    def to_dict(self) -> Dict[str, str]:
        return {"key": self.key, "description": self.description, "defaultValue": self.default_value}


class SecretStore:
    def __init__(self, env_dir_for: Callable[[str], Path], key: bytes) -> None:
        self._env_dir_for = env_dir_for
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, env_dir_for: Callable[[str], Path], encryption_key: Optional[str], key_file: Path) -> "SecretStore":
        key = _fernet_key(encryption_key) if encryption_key else load_or_create_key(key_file)
        return cls(env_dir_for, key)

    def _storage_path(self, bot_id: str) -> Path:
        return self._env_dir_for(bot_id) / "storage.json"

    def _load(self, bot_id: str) -> Dict[str, Dict[str, str]]:
        path = self._storage_path(bot_id)
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                return {
                    "vars": dict(data.get("vars") or {}),
                    "encrypted": dict(data.get("encrypted") or {}),
                }
            except (ValueError, AttributeError) as e:
                logger.error("Failed to load env storage for bot %s: %s", bot_id, e)
        return {"vars": {}, "encrypted": {}}

    def _save(self, bot_id: str, storage: Mapping[str, Mapping[str, str]]) -> None:
        path = self._storage_path(bot_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(storage, indent=2), encoding="utf-8")

    def _decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed: invalid token (key mismatch or tampering)")
            return ""

    def get_all(self, bot_id: str) -> Dict[str, str]:
        storage = self._load(bot_id)
        result = dict(storage["vars"])
        for key, token in storage["encrypted"].items():
            result[key] = self._decrypt(token)
        return result

    def set_many(self, bot_id: str, values: Mapping[str, str]) -> None:
        storage = self._load(bot_id)
        for key, value in values.items():
            if is_sensitive(key):
                storage["encrypted"][key] = self._fernet.encrypt(str(value).encode()).decode()
                storage["vars"].pop(key, None)
            else:
                storage["vars"][key] = str(value)
                storage["encrypted"].pop(key, None)
        self._save(bot_id, storage)
        logger.info("Saved %d env vars for bot %s", len(values), bot_id)

    def delete(self, bot_id: str, key: str) -> None:
        storage = self._load(bot_id)
        storage["vars"].pop(key, None)
        storage["encrypted"].pop(key, None)
        self._save(bot_id, storage)

    def purge(self, bot_id: str) -> None:
        path = self._storage_path(bot_id)
        if path.exists():
            path.unlink()

    def missing_required(self, bot_id: str, required: Iterable[str] = REQUIRED_ENV_VARS) -> List[str]:
        values = self.get_all(bot_id)
        return [name for name in required if not values.get(name, "").strip()]

    def info(self, bot_id: str) -> List[EnvVarInfo]:
        values = self.get_all(bot_id)
        out: List[EnvVarInfo] = []
        for key, value in values.items():
            sensitive = is_sensitive(key)
            out.append(
                EnvVarInfo(
                    key=key,
                    value=mask_value(value) if sensitive else value,
                    sensitive=sensitive,
                    required=key in REQUIRED_ENV_VARS,
                )
            )
        for name in REQUIRED_ENV_VARS:
            if name not in values:
                out.append(EnvVarInfo(key=name, value="", sensitive=is_sensitive(name), required=True))
        return out


def parse_env_example(repo_path: Path) -> List[EnvExampleEntry]:
    example = repo_path / ".env.example"
    if not example.exists():
        return []

    entries: List[EnvExampleEntry] = []
    description = ""
    for line in example.read_text(encoding="utf-8", errors="replace").splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            description = stripped[1:].strip()
            continue
        match = _ENV_LINE_RE.match(stripped)
        if match:
            entries.append(EnvExampleEntry(key=match.group(1), description=description, default_value=match.group(2)))
            description = ""
    return entries
