from __future__ import annotations

import asyncio
import hmac
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .buildlog import BuildLogRegistry
from .casaos import DeploymentModeResolver, PlatformProcessor
from .credentials import SecretStore
from .models import OperationResult
from .orchestrator import BotManager
from .registry import BotRegistry
from .repository import RepositoryManager
from .runtime import CommandRunner, ContainerRuntime, RuntimeCommandError
from .settings import Settings
from .tasks import EventBus, TaskQueue

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


class CreateBotRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(default="", description="Display name")
    source_type: str = Field(default="git", alias="sourceType", description="git or image")
    url: Optional[str] = Field(default=None, description="Repository URL (git)")
    branch: Optional[str] = Field(default=None)
    image_ref: Optional[str] = Field(default=None, alias="imageRef", description="Image reference (image)")
    env_vars: Optional[Dict[str, str]] = Field(default=None, alias="envVars")


class UpdateBotRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    branch: Optional[str] = None
    env_vars: Optional[Dict[str, str]] = Field(default=None, alias="envVars")


class EnvUpdateRequest(BaseModel):
    vars: Optional[Dict[str, str]] = None


class DeploymentModeRequest(BaseModel):
    mode: str


@dataclass
class AppContext:
    settings: Settings
    runtime: ContainerRuntime
    manager: BotManager
    modes: DeploymentModeResolver
    events: EventBus
    tasks: TaskQueue


def build_context(
    settings: Settings,
    runtime: Optional[ContainerRuntime] = None,
    repository: Optional[RepositoryManager] = None,
) -> AppContext:
    runner = CommandRunner(default_timeout=settings.quick_timeout_seconds)
    if runtime is None:
        runtime = ContainerRuntime(
            runner,
            docker_bin=settings.docker_bin,
            quick_timeout=settings.quick_timeout_seconds,
            build_timeout=settings.build_timeout_seconds,
        )
    if repository is None:
        repository = RepositoryManager(
            settings.bots_dir, runner, git_bin=settings.git_bin, timeout=settings.build_timeout_seconds
        )

    credentials = SecretStore.from_settings(repository.env_path, settings.encryption_key, settings.data_dir / "secret.key")
    modes = DeploymentModeResolver(settings, runtime)
    manager = BotManager(
        settings=settings,
        registry=BotRegistry(settings.registry_file),
        runtime=runtime,
        repository=repository,
        credentials=credentials,
        logs=BuildLogRegistry(),
        platform=PlatformProcessor(settings, runtime),
        modes=modes,
    )
    events = EventBus()
    return AppContext(
        settings=settings,
        runtime=runtime,
        manager=manager,
        modes=modes,
        events=events,
        tasks=TaskQueue(events),
    )


def _error(status_code: int, error: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"success": False, "error": error})


def _sse(payload: Mapping[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def create_app(settings: Settings, context: Optional[AppContext] = None) -> FastAPI:
    ctx = context or build_context(settings)
    manager = ctx.manager
    events = ctx.events
    tasks = ctx.tasks

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            await manager.sync_container_states()
        except RuntimeCommandError as e:
            logger.warning("Container state sync skipped: %s", e.message)
        yield
        events.close()

    app = FastAPI(title="Bot Manager Core", version=__version__, lifespan=lifespan)
    started_at_s = time.time()

    def require_bot(bot_id: str) -> Dict[str, Any]:
        bot = manager.get_bot(bot_id)
        if bot is None:
            raise _error(404, "Bot not found")
        return bot.to_public_dict()

    def public_bot(bot_id: str) -> Optional[Dict[str, Any]]:
        bot = manager.get_bot(bot_id)
        return bot.to_public_dict() if bot else None

    def checked(result: OperationResult, status_code: int = 400) -> OperationResult:
        if not result.success:
            raise _error(status_code, result.error or "Operation failed")
        return result

    @app.get("/health")
    def health() -> Mapping[str, Any]:
        return {"status": "healthy", "version": __version__, "uptime_s": int(time.time() - started_at_s)}

    @app.get("/api/bots")
    def list_bots() -> Mapping[str, Any]:
        return {"success": True, "bots": [b.to_public_dict() for b in manager.list_bots()]}

    @app.post("/api/bots")
    async def create_bot(req: CreateBotRequest) -> Mapping[str, Any]:
        try:
            result = await manager.create_bot(
                name=req.name,
                source_type=req.source_type,
                url=req.url,
                branch=req.branch,
                image_ref=req.image_ref,
                env_vars=req.env_vars,
            )
        except ValueError as e:
            raise _error(400, str(e))
        checked(result, 500)
        events.publish("bot:created", result.data.get("bot"))
        return result.to_dict()

    @app.get("/api/bots/{bot_id}")
    async def get_bot(bot_id: str) -> Mapping[str, Any]:
        bot = require_bot(bot_id)
        return {"success": True, "bot": bot, "repoInfo": await manager.repo_info(bot_id)}

    @app.put("/api/bots/{bot_id}")
    async def update_bot(bot_id: str, req: UpdateBotRequest) -> Mapping[str, Any]:
        require_bot(bot_id)
        result = checked(await manager.update_bot(bot_id, name=req.name, branch=req.branch, env_vars=req.env_vars))
        events.publish("bot:updated", result.data.get("bot"))
        return result.to_dict()

    @app.delete("/api/bots/{bot_id}")
    async def delete_bot(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        checked(await manager.delete_bot(bot_id), 500)
        events.publish("bot:deleted", {"id": bot_id})
        return {"success": True}

    @app.post("/api/bots/{bot_id}/start")
    async def start_bot(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        checked(await manager.start(bot_id))
        bot = public_bot(bot_id)
        events.publish("bot:started", bot)
        return {"success": True, "bot": bot}

    @app.post("/api/bots/{bot_id}/stop")
    async def stop_bot(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        checked(await manager.stop(bot_id))
        bot = public_bot(bot_id)
        events.publish("bot:stopped", bot)
        return {"success": True, "bot": bot}

    @app.post("/api/bots/{bot_id}/restart")
    async def restart_bot(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        checked(await manager.restart(bot_id))
        bot = public_bot(bot_id)
        events.publish("bot:restarted", bot)
        return {"success": True, "bot": bot}

    @app.post("/api/bots/{bot_id}/pull")
    async def pull_bot(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        checked(await manager.pull_and_rebuild(bot_id))
        bot = public_bot(bot_id)
        events.publish("bot:rebuilt", bot)
        return {"success": True, "bot": bot}

    @app.post("/api/bots/{bot_id}/build", status_code=202)
    async def build_bot(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        tasks.submit(
            "build",
            bot_id,
            manager.build(bot_id),
            done_event="bot:built",
            failed_event="bot:build-failed",
            payload=lambda: public_bot(bot_id),
        )
        return {"success": True, "message": "Build started"}

    @app.get("/api/bots/{bot_id}/build-logs")
    async def build_logs(bot_id: str, request: Request) -> StreamingResponse:
        bot = require_bot(bot_id)
        log = manager.logs.get(bot_id)
        subscription = log.subscribe()
        history = log.snapshot()

        async def stream() -> AsyncIterator[str]:
            try:
                yield _sse({"message": f"Connected to build logs for {bot['name']}", "type": "system"})
                for entry in history:
                    yield _sse(entry.to_dict())
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        entry = await subscription.get(timeout=KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield _sse({"message": "", "type": "ping"})
                        continue
                    if entry is None:
                        break
                    yield _sse(entry.to_dict())
            finally:
                subscription.close()

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.get("/api/bots/{bot_id}/logs")
    async def bot_logs(bot_id: str, tail: int = 100) -> Mapping[str, Any]:
        require_bot(bot_id)
        return checked(await manager.get_logs(bot_id, tail=max(1, tail))).to_dict()

    @app.get("/api/bots/{bot_id}/stats")
    async def bot_stats(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        return checked(await manager.get_stats(bot_id)).to_dict()

    @app.get("/api/bots/{bot_id}/files")
    def bot_files(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        return checked(manager.list_files(bot_id)).to_dict()

    @app.get("/api/bots/{bot_id}/updates")
    async def bot_updates(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        return checked(await manager.check_updates(bot_id)).to_dict()

    @app.get("/api/bots/{bot_id}/env")
    def get_env(bot_id: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        return checked(manager.get_env(bot_id)).to_dict()

    @app.put("/api/bots/{bot_id}/env")
    async def put_env(bot_id: str, req: EnvUpdateRequest) -> Mapping[str, Any]:
        require_bot(bot_id)
        if req.vars is None:
            raise _error(400, "vars object is required")
        result = checked(await manager.set_env(bot_id, req.vars))
        events.publish("bot:updated", public_bot(bot_id))
        return result.to_dict()

    @app.delete("/api/bots/{bot_id}/env/{key}")
    async def delete_env(bot_id: str, key: str) -> Mapping[str, Any]:
        require_bot(bot_id)
        return checked(await manager.delete_env(bot_id, key)).to_dict()

    @app.post("/api/bots/{bot_id}/request-update")
    async def request_update(bot_id: str, x_bot_token: Optional[str] = Header(default=None)) -> Mapping[str, Any]:
        if not x_bot_token:
            raise _error(401, "X-Bot-Token header required")
        bot = manager.get_bot(bot_id)
        if bot is None:
            raise _error(404, "Bot not found")
        if not bot.update_token or not hmac.compare_digest(bot.update_token, x_bot_token):
            raise _error(403, "Invalid token")

        logger.info("Bot %s requested self-update", bot_id)
        events.publish("bot:update-requested", {"id": bot_id})
        checked(await manager.pull_and_rebuild(bot_id))
        events.publish("bot:rebuilt", public_bot(bot_id))
        return {"success": True, "message": "Update completed"}

    @app.get("/api/system/deployment")
    async def get_deployment() -> Mapping[str, Any]:
        return {"success": True, **(await ctx.modes.info())}

    @app.put("/api/system/deployment")
    async def put_deployment(req: DeploymentModeRequest) -> Mapping[str, Any]:
        try:
            mode = ctx.modes.set_mode(req.mode)
        except ValueError as e:
            raise _error(400, str(e))
        return {"success": True, "mode": mode}

    @app.get("/api/events")
    async def event_stream(request: Request) -> StreamingResponse:
        subscription = events.subscribe()

        async def stream() -> AsyncIterator[str]:
            try:
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        event = await subscription.get(timeout=KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield _sse({"type": "ping"})
                        continue
                    if event is None:
                        break
                    yield _sse(event.to_dict())
            finally:
                subscription.close()

        return StreamingResponse(stream(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})

    return app
