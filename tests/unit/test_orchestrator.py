"""
Tests for the bot lifecycle: create, build, start, stop, update and delete.

Docker and git are faked (see conftest.py); compose documents and the registry
are real files under a temporary data dir.
"""
import asyncio
import json

import pytest
import yaml

from bot_manager_core.orchestrator import ALREADY_RUNNING, NOT_FOUND, NOT_RUNNING, belongs_to

TOKEN = "abcdefghijkl-secret"

WORKER_COMPOSE_WITH_POST_INSTALL = """\
services:
  worker:
    image: foo/bar:latest
x-casaos:
  main: worker
  post-install-cmd: echo finishing
"""


async def create_git_bot(manager, url, **kwargs):
    result = await manager.create_bot("Helper", url=url, **kwargs)
    assert result.success, result.error
    return result.data["bot"]["id"]


def load_compose_file(manager, bot_id):
    return yaml.safe_load(manager.compose_path(bot_id).read_text())


class TestBelongsTo:
    """Container name ownership."""

    @pytest.mark.parametrize(
        "name",
        ["bot-abc", "bot-abc-app", "bot-abc_worker_1", "casaos-abc-db"],
    )
    def test_owned_names(self, name):
        assert belongs_to(name, "abc")

    @pytest.mark.parametrize("name", ["bot-abcd", "bot-ab", "other"])
    def test_foreign_names(self, name):
        assert not belongs_to(name, "abc")


class TestCreateBot:
    """Registration of new bots."""

    @pytest.mark.asyncio
    async def test_create_git_bot(self, manager, node_repo, fake_repository):
        result = await manager.create_bot(
            " Helper ", url=node_repo, env_vars={"DISCORD_TOKEN": TOKEN, "PREFIX": "!"}
        )
        assert result.success
        bot = result.data["bot"]
        assert bot["name"] == "Helper"
        assert bot["botType"] == "nodejs"
        assert bot["envVars"] == {"PREFIX": "!"}
        assert "updateToken" not in bot and "authHash" not in bot
        assert (fake_repository.repo_path(bot["id"]) / "package.json").exists()

        stored = manager.get_bot(bot["id"])
        assert len(stored.update_token) == 64
        assert TOKEN not in manager._registry.path.read_text()
        assert manager.effective_env(stored) == {"PREFIX": "!", "DISCORD_TOKEN": TOKEN}

    @pytest.mark.asyncio
    async def test_create_image_bot(self, manager):
        result = await manager.create_bot("Img", source_type="image", image_ref="ghcr.io/example/bot:1")
        assert result.success
        assert result.data["bot"]["sourceType"] == "image"
        assert "url" not in result.data["bot"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"name": ""},
            {"name": "x", "source_type": "git"},
            {"name": "x", "source_type": "image"},
            {"name": "x", "source_type": "svn", "url": "u"},
        ],
    )
    async def test_invalid_requests_raise(self, manager, kwargs):
        with pytest.raises(ValueError):
            await manager.create_bot(**kwargs)
        assert manager.list_bots() == []

    @pytest.mark.asyncio
    async def test_clone_failure_cleans_up(self, manager, fake_repository, test_settings):
        result = await manager.create_bot("Missing", url="https://github.com/example/missing.git")
        assert not result.success
        assert "not found" in result.error
        assert manager.list_bots() == []
        assert list(test_settings.bots_dir.iterdir()) == []


class TestBuild:
    """Compose generation and image builds."""

    @pytest.mark.asyncio
    async def test_build_generates_compose_and_image(self, manager, node_repo, fake_runtime, fake_repository):
        bot_id = await create_git_bot(manager, node_repo, env_vars={"DISCORD_TOKEN": TOKEN})
        result = await manager.build(bot_id)
        assert result.success, result.error
        assert result.data["buildTarget"] == "bot"

        repo_path = fake_repository.repo_path(bot_id)
        assert (repo_path / "Dockerfile").read_text().startswith("FROM node:20-alpine")
        assert ("build", str(repo_path), f"bot-{bot_id}:latest") in fake_runtime.calls

        doc = load_compose_file(manager, bot_id)
        service = doc["services"]["bot"]
        assert service["labels"]["bot-id"] == bot_id
        assert service["environment"]["DISCORD_TOKEN"] == TOKEN
        assert service["environment"]["BOT_MANAGER_UPDATE_TOKEN"] == manager.get_bot(bot_id).update_token

        bot = manager.get_bot(bot_id)
        assert bot.status == "stopped"
        assert bot.app_name == f"bot-{bot_id}"
        messages = [e.message for e in manager.logs.get(bot_id).snapshot()]
        assert messages[0] == "Building Helper"
        assert messages[-1] == "Build completed"

    @pytest.mark.asyncio
    async def test_rebuild_keeps_tokens(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        before = manager.get_bot(bot_id)
        await manager.build(bot_id)
        await manager.build(bot_id)
        after = manager.get_bot(bot_id)
        assert (after.auth_hash, after.update_token) == (before.auth_hash, before.update_token)

    @pytest.mark.asyncio
    async def test_build_failure_marks_error(self, manager, node_repo, fake_runtime):
        bot_id = await create_git_bot(manager, node_repo)
        fake_runtime.fail_build = True
        result = await manager.build(bot_id)
        assert not result.success
        assert manager.get_bot(bot_id).status == "error"
        last = manager.logs.get(bot_id).snapshot()[-1]
        assert last.severity == "error"
        assert last.message.startswith("Build failed:")

    @pytest.mark.asyncio
    async def test_build_unknown_bot(self, manager):
        assert (await manager.build("missing")).error == NOT_FOUND

    @pytest.mark.asyncio
    async def test_build_rejected_while_running(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        await manager.start(bot_id)
        result = await manager.build(bot_id)
        assert not result.success
        assert manager.get_bot(bot_id).status == "running"

    @pytest.mark.asyncio
    async def test_image_bot_build_has_no_target(self, manager, fake_runtime):
        result = await manager.create_bot("Img", source_type="image", image_ref="ghcr.io/example/bot:1")
        bot_id = result.data["bot"]["id"]
        build = await manager.build(bot_id)
        assert build.success
        assert build.data["buildTarget"] is None
        assert "build" not in fake_runtime.call_names()
        assert load_compose_file(manager, bot_id)["services"]["bot"]["image"] == "ghcr.io/example/bot:1"


class TestStartStop:
    """Container lifecycle in standalone docker mode."""

    @pytest.mark.asyncio
    async def test_start_builds_when_needed(self, manager, node_repo, fake_runtime, fake_repository):
        bot_id = await create_git_bot(manager, node_repo, env_vars={"DISCORD_TOKEN": TOKEN, "PREFIX": "!"})
        result = await manager.start(bot_id)
        assert result.success, result.error

        names = fake_runtime.call_names()
        assert names.index("build") < names.index("create") < names.index("start")
        _, name, image, env, binds = next(c for c in fake_runtime.calls if c[0] == "create")
        assert name == f"bot-{bot_id}"
        assert image == f"bot-{bot_id}:latest"
        assert env["DISCORD_TOKEN"] == TOKEN
        assert env["PREFIX"] == "!"
        assert binds == {str(fake_repository.data_path(bot_id)): "/app/data"}

        bot = manager.get_bot(bot_id)
        assert bot.status == "running"
        assert bot.container_ids == result.data["containerIds"]
        assert bot.has_been_started

    @pytest.mark.asyncio
    async def test_start_twice(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        await manager.start(bot_id)
        assert (await manager.start(bot_id)).error == ALREADY_RUNNING

    @pytest.mark.asyncio
    async def test_concurrent_starts_are_serialized(self, manager, node_repo, fake_runtime):
        bot_id = await create_git_bot(manager, node_repo)
        results = await asyncio.gather(manager.start(bot_id), manager.start(bot_id))
        assert sorted(r.success for r in results) == [False, True]
        assert fake_runtime.call_names().count("create") == 1

    @pytest.mark.asyncio
    async def test_stop(self, manager, node_repo, fake_runtime):
        bot_id = await create_git_bot(manager, node_repo)
        await manager.start(bot_id)
        container_id = manager.get_bot(bot_id).container_ids[0]
        assert (await manager.stop(bot_id)).success
        assert ("stop", container_id) in fake_runtime.calls
        assert container_id not in fake_runtime.containers
        bot = manager.get_bot(bot_id)
        assert (bot.status, bot.container_ids) == ("stopped", [])
        assert (await manager.stop(bot_id)).error == NOT_RUNNING

    @pytest.mark.asyncio
    async def test_restart_from_stopped(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        assert (await manager.restart(bot_id)).success
        assert manager.get_bot(bot_id).status == "running"

    @pytest.mark.asyncio
    async def test_image_bot_pulls_before_start(self, manager, fake_runtime):
        result = await manager.create_bot("Img", source_type="image", image_ref="ghcr.io/example/bot:1")
        bot_id = result.data["bot"]["id"]
        assert (await manager.start(bot_id)).success
        names = fake_runtime.call_names()
        assert names.index("pull") < names.index("create")
        create = next(c for c in fake_runtime.calls if c[0] == "create")
        assert create[2] == "ghcr.io/example/bot:1"


class TestPullAndRebuild:
    """Updating a bot from its repository."""

    @pytest.mark.asyncio
    async def test_running_bot_is_restarted(self, manager, node_repo, fake_runtime, fake_repository):
        bot_id = await create_git_bot(manager, node_repo)
        await manager.start(bot_id)
        old_container = manager.get_bot(bot_id).container_ids[0]

        result = await manager.pull_and_rebuild(bot_id)
        assert result.success, result.error
        assert result.data["restarted"] is True
        assert fake_repository.pulled == [bot_id]
        assert ("rmi", f"bot-{bot_id}:latest") in fake_runtime.calls
        bot = manager.get_bot(bot_id)
        assert bot.status == "running"
        assert bot.container_ids != [old_container]

    @pytest.mark.asyncio
    async def test_stopped_bot_stays_stopped(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        result = await manager.pull_and_rebuild(bot_id)
        assert result.data["restarted"] is False
        assert manager.get_bot(bot_id).status == "stopped"

    @pytest.mark.asyncio
    async def test_image_bots_are_rejected(self, manager):
        result = await manager.create_bot("Img", source_type="image", image_ref="ghcr.io/example/bot:1")
        update = await manager.pull_and_rebuild(result.data["bot"]["id"])
        assert not update.success


class TestCasaOSMode:
    """Deployment through the platform's compose projects."""

    @pytest.mark.asyncio
    async def test_build_and_start(self, casaos_manager, worker_repo, fake_runtime, casaos_context):
        bot_id = await create_git_bot(casaos_manager, worker_repo, env_vars={"DISCORD_TOKEN": TOKEN})
        assert (await casaos_manager.build(bot_id)).success

        app_name = f"bot-{bot_id}"
        doc = load_compose_file(casaos_manager, bot_id)
        worker = doc["services"]["worker"]
        data_root = casaos_context.settings.platform.data_root
        assert worker["volumes"] == [f"{data_root}/AppData/{app_name}/config:/config"]
        assert worker["expose"] == ["80"]
        assert worker["environment"]["TOKEN"] == TOKEN
        assert worker["environment"]["APP"] == app_name
        assert worker["networks"] == ["pcs"]

        platform = casaos_manager._platform
        assert (platform.app_data_dir(app_name) / "config").is_dir()
        assert (platform.metadata_dir(app_name) / "docker-compose.yml").exists()
        assert any("echo preparing" in " ".join(call) for call in fake_runtime.runner.calls)

        result = await casaos_manager.start(bot_id)
        assert result.success, result.error
        assert "compose-up" in fake_runtime.call_names()
        assert len(result.data["containerIds"]) == 1

        assert (await casaos_manager.stop(bot_id)).success
        assert "compose-down" in fake_runtime.call_names()
        assert casaos_manager.get_bot(bot_id).status == "stopped"

    @pytest.mark.asyncio
    async def test_failing_pre_install_aborts_build(self, casaos_manager, worker_repo, fake_runtime):
        bot_id = await create_git_bot(casaos_manager, worker_repo)
        fake_runtime.runner.fail_marker = "echo preparing"
        result = await casaos_manager.build(bot_id)
        assert not result.success
        assert "Pre-install command failed" in result.error
        assert "build" not in fake_runtime.call_names()
        assert casaos_manager.get_bot(bot_id).status == "error"

    @pytest.mark.asyncio
    async def test_delete_removes_platform_state(self, casaos_manager, worker_repo, fake_runtime):
        bot_id = await create_git_bot(casaos_manager, worker_repo)
        await casaos_manager.start(bot_id)
        app_name = f"bot-{bot_id}"
        fake_runtime.volumes = [f"{app_name}_data"]

        assert (await casaos_manager.delete_bot(bot_id)).success
        platform = casaos_manager._platform
        assert not platform.metadata_dir(app_name).exists()
        assert not platform.app_data_dir(app_name).exists()
        assert fake_runtime.volumes == []
        assert casaos_manager.list_bots() == []

    @pytest.mark.asyncio
    async def test_post_install_runs_on_first_start_only(self, casaos_manager, make_repo, fake_runtime):
        url = make_repo("post-install-bot", {"docker-compose.yml": WORKER_COMPOSE_WITH_POST_INSTALL})
        bot_id = await create_git_bot(casaos_manager, url)

        assert (await casaos_manager.start(bot_id)).success
        assert casaos_manager.get_bot(bot_id).has_been_started
        assert (await casaos_manager.stop(bot_id)).success
        assert (await casaos_manager.start(bot_id)).success

        post_install = [call for call in fake_runtime.runner.calls if "echo finishing" in " ".join(call)]
        assert len(post_install) == 1

    @pytest.mark.asyncio
    async def test_delete_continues_when_credentials_cannot_be_removed(
        self, casaos_manager, worker_repo, casaos_context, monkeypatch
    ):
        bot_id = await create_git_bot(casaos_manager, worker_repo, env_vars={"DISCORD_TOKEN": TOKEN})

        def locked(_bot_id):
            raise PermissionError("storage.json is locked")

        monkeypatch.setattr(casaos_manager._credentials, "purge", locked)
        assert (await casaos_manager.delete_bot(bot_id)).success
        assert not (casaos_context.settings.bots_dir / bot_id).exists()
        assert casaos_manager.list_bots() == []


class TestQueries:
    """Logs, stats, files and state sync."""

    @pytest.mark.asyncio
    async def test_logs_and_stats(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        assert (await manager.get_logs(bot_id)).error == "Bot has no containers"
        assert (await manager.get_stats(bot_id)).error == NOT_RUNNING

        await manager.start(bot_id)
        container_id = manager.get_bot(bot_id).container_ids[0]
        logs = (await manager.get_logs(bot_id, tail=10)).data["logs"]
        assert logs == [f"[2024-01-01T00:00:00.000000000Z] [{container_id[:12]}] hello from {container_id[:4]}"]
        stats = (await manager.get_stats(bot_id)).data["stats"]
        assert stats == {"cpuPercent": 1.5, "memoryUsageMB": 64.0, "memoryLimitMB": 512.0}

    @pytest.mark.asyncio
    async def test_sync_marks_vanished_bots_stopped(self, manager, node_repo, fake_runtime):
        bot_id = await create_git_bot(manager, node_repo)
        await manager.start(bot_id)
        assert await manager.sync_container_states() == 0
        fake_runtime.containers.clear()
        assert await manager.sync_container_states() == 1
        assert manager.get_bot(bot_id).status == "stopped"

    @pytest.mark.asyncio
    async def test_files_and_updates(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        assert manager.list_files(bot_id).data["files"] == ["index.js", "package.json"]
        updates = await manager.check_updates(bot_id)
        assert updates.data == {"hasUpdates": True, "behindBy": 2, "aheadBy": 0}
        assert (await manager.repo_info(bot_id))["lastCommit"] == "abc1234"


class TestEnv:
    """Environment variable management."""

    @pytest.mark.asyncio
    async def test_env_round_trip(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        env = manager.get_env(bot_id).data
        assert env["valid"] is False
        assert env["missing"] == ["DISCORD_TOKEN", "CLIENT_ID", "GUILD_ID"]
        assert [e["key"] for e in env["envExample"]] == ["DISCORD_TOKEN", "CLIENT_ID", "PREFIX"]
        assert env["envExample"][0]["description"] == "Bot token from the developer portal"

        result = await manager.set_env(bot_id, {"DISCORD_TOKEN": TOKEN, "CLIENT_ID": "1", "GUILD_ID": "2"})
        assert result.data == {"valid": True, "missing": []}
        values = {e["key"]: e["value"] for e in manager.get_env(bot_id).data["envVars"]}
        assert values["DISCORD_TOKEN"] == "abcd****cret"
        assert manager.get_bot(bot_id).env_vars == {"CLIENT_ID": "1", "GUILD_ID": "2"}

        assert (await manager.delete_env(bot_id, "GUILD_ID")).success
        assert manager.get_env(bot_id).data["missing"] == ["GUILD_ID"]
        assert "GUILD_ID" not in manager.get_bot(bot_id).env_vars

    @pytest.mark.asyncio
    async def test_update_bot(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        result = await manager.update_bot(bot_id, name="Renamed", branch="dev")
        assert result.data["bot"]["name"] == "Renamed"
        assert result.data["bot"]["branch"] == "dev"
        assert (await manager.update_bot("missing", name="x")).error == NOT_FOUND

    @pytest.mark.asyncio
    async def test_registry_never_stores_sensitive_values(self, manager, node_repo):
        bot_id = await create_git_bot(manager, node_repo)
        await manager.set_env(bot_id, {"API_KEY": "sk-very-secret-value"})
        raw = json.loads(manager._registry.path.read_text())
        assert "API_KEY" not in raw["bots"][bot_id].get("envVars", {})
