from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

BOT_STATUSES = ("stopped", "starting", "running", "stopping", "error", "building")
SOURCE_TYPES = ("git", "image")
BOT_TYPES = ("nodejs", "python", "go", "java", "dockerfile", "compose", "unknown")
DEPLOYMENT_MODES = ("casaos", "docker")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def app_name_for(bot_id: str) -> str:
    return f"bot-{bot_id}"


def image_name_for(bot_id: str) -> str:
    return f"bot-{bot_id}:latest"


def _normalize_source_type(value: Any) -> str:
    if value in (None, "", "git"):
        return "git"
    if value in ("image", "docker-image"):
        return "image"
    raise ValueError(f"Invalid source type '{value}'")


@dataclass
class BotConfig:
    id: str
    name: str
    source_type: str = "git"
    url: Optional[str] = None
    branch: str = "main"
    image_ref: Optional[str] = None
    status: str = "stopped"
    container_ids: List[str] = field(default_factory=list)
    update_token: Optional[str] = None
    auth_hash: Optional[str] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    bot_type: Optional[str] = None
    has_database: Optional[bool] = None
    app_name: Optional[str] = None
    has_been_started: bool = False
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.source_type = _normalize_source_type(self.source_type)
        if self.status not in BOT_STATUSES:
            raise ValueError(f"Invalid bot status '{self.status}'")
        if self.source_type == "git":
            if not self.url:
                raise ValueError("url is required for git source type")
            self.image_ref = None
        else:
            if not self.image_ref:
                raise ValueError("imageRef is required for image source type")
            self.url = None

    @property
    def derived_app_name(self) -> str:
        return self.app_name or app_name_for(self.id)

    def touch(self) -> None:
        self.updated_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "sourceType": self.source_type,
            "url": self.url,
            "branch": self.branch,
            "imageRef": self.image_ref,
            "status": self.status,
            "containerIds": list(self.container_ids),
            "updateToken": self.update_token,
            "authHash": self.auth_hash,
            "envVars": dict(self.env_vars),
            "botType": self.bot_type,
            "hasDatabase": self.has_database,
            "appName": self.app_name,
            "hasBeenStarted": self.has_been_started,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        return {k: v for k, v in data.items() if v is not None}

    def to_public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("authHash", None)
        data.pop("updateToken", None)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BotConfig":
        env_vars = data.get("envVars") or {}
        if not isinstance(env_vars, Mapping):
            env_vars = {}
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            source_type=data.get("sourceType") or "git",
            url=data.get("url"),
            branch=data.get("branch") or "main",
            image_ref=data.get("imageRef"),
            status=data.get("status") or "stopped",
            container_ids=[str(c) for c in data.get("containerIds") or []],
            update_token=data.get("updateToken"),
            auth_hash=data.get("authHash"),
            env_vars={str(k): str(v) for k, v in env_vars.items()},
            bot_type=data.get("botType"),
            has_database=data.get("hasDatabase"),
            app_name=data.get("appName"),
            has_been_started=bool(data.get("hasBeenStarted", False)),
            created_at=data.get("createdAt") or utc_now(),
            updated_at=data.get("updatedAt") or utc_now(),
        )


@dataclass(frozen=True)
class DetectionResult:
    type: str = "unknown"
    has_dockerfile: bool = False
    has_compose: bool = False
    has_database: bool = False
    entry_point: Optional[str] = None
    package_manager: Optional[str] = None


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    name: str
    state: str
    status: str


@dataclass
class OperationResult:
    success: bool
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, **data: Any) -> "OperationResult":
        return cls(success=False, error=error, data=data)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.error is not None:
            out["error"] = self.error
        out.update(self.data)
        return out
