"""
Pytest configuration and fixtures.

Docker and git are replaced by in-memory fakes so lifecycle tests run without a
container engine: FakeRuntime keeps containers, images and volumes in dicts and
FakeRepository "clones" from local directories.
"""
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

import pytest
import yaml
from fastapi.testclient import TestClient

from bot_manager_core.app import build_context, create_app
from bot_manager_core.models import ContainerInfo
from bot_manager_core.repository import RepositoryError, RepositoryManager, RepoInfo, UpdateStatus
from bot_manager_core.runtime import CommandResult, ContainerStats, LogLine, RuntimeCommandError
from bot_manager_core.settings import PlatformEnv, Settings


class FakeRunner:
    """Records commands; raises for commands containing fail_marker."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.fail_marker: Optional[str] = None
        self.stdout = ""

    async def run(self, args, timeout=None, check=True, env=None, cwd=None):
        self.calls.append(list(args))
        if self.fail_marker and any(self.fail_marker in a for a in args):
            raise RuntimeCommandError("EXIT", f"Command failed: {self.fail_marker}", {"returncode": 1})
        return CommandResult(returncode=0, stdout=self.stdout, stderr="")


class FakeRuntime:
    def __init__(self):
        self.runner = FakeRunner()
        self.containers: Dict[str, ContainerInfo] = {}
        self.labels: Dict[str, Dict[str, str]] = {}
        self.images = set()
        self.volumes: List[str] = []
        self.running_names = set()
        self.calls: List[tuple] = []
        self.fail_stop = set()
        self.fail_remove = set()
        self.fail_build = False
        self._counter = 0

    def _new_id(self) -> str:
        self._counter += 1
        return f"{self._counter:012x}{'a' * 52}"

    def _add(self, name: str, labels: Mapping[str, str], state: str) -> str:
        container_id = self._new_id()
        self.containers[container_id] = ContainerInfo(id=container_id, name=name, state=state, status=state)
        self.labels[container_id] = dict(labels)
        return container_id

    def _set_state(self, container_id: str, state: str) -> None:
        info = self.containers[container_id]
        self.containers[container_id] = ContainerInfo(id=info.id, name=info.name, state=state, status=state)

    async def check_connection(self):
        return True

    async def is_container_running(self, name):
        return name in self.running_names

    async def list_containers(self, labels=None):
        out = []
        for container_id, info in self.containers.items():
            own = self.labels.get(container_id, {})
            if all(own.get(k) == v for k, v in (labels or {}).items()):
                out.append(info)
        return out

    async def create_container(self, name, image, env=None, labels=None, binds=None, network=None, **kwargs):
        self.calls.append(("create", name, image, dict(env or {}), dict(binds or {})))
        return self._add(name, labels or {}, "created")

    async def start_container(self, container_id):
        self.calls.append(("start", container_id))
        self._set_state(container_id, "running")

    async def stop_container(self, container_id, timeout=10):
        self.calls.append(("stop", container_id))
        if container_id in self.fail_stop or container_id not in self.containers:
            raise RuntimeCommandError("EXIT", f"No such container: {container_id}")
        self._set_state(container_id, "exited")

    async def remove_container(self, container_id, force=False):
        self.calls.append(("remove", container_id))
        if container_id in self.fail_remove or container_id not in self.containers:
            raise RuntimeCommandError("EXIT", f"No such container: {container_id}")
        del self.containers[container_id]
        self.labels.pop(container_id, None)

    async def container_logs(self, container_id, tail=100):
        return [LogLine(timestamp="2024-01-01T00:00:00.000000000Z", message=f"hello from {container_id[:4]}")]

    async def container_stats(self, container_id):
        return ContainerStats(cpu_percent=1.5, memory_usage_mb=64.0, memory_limit_mb=512.0)

    async def build_image(self, context, tag, dockerfile="Dockerfile", on_line=None):
        self.calls.append(("build", str(context), tag))
        if self.fail_build:
            raise RuntimeCommandError("EXIT", "docker build failed with exit code 1")
        if on_line:
            on_line("Step 1/2 : FROM base")
            on_line("Successfully built")
        self.images.add(tag)

    async def pull_image(self, ref, on_line=None):
        self.calls.append(("pull", ref))
        if on_line:
            on_line(f"Pulling {ref}")
        self.images.add(ref)

    async def image_exists(self, ref):
        return ref in self.images

    async def remove_image(self, ref):
        self.calls.append(("rmi", ref))
        self.images.discard(ref)

    async def list_volumes(self):
        return list(self.volumes)

    async def remove_volume(self, name):
        self.calls.append(("volume-rm", name))
        self.volumes.remove(name)

    async def compose_up(self, compose_path, project, on_line=None, build=False):
        self.calls.append(("compose-up", str(compose_path), project))
        doc = yaml.safe_load(Path(compose_path).read_text())
        for service_name, service in doc["services"].items():
            labels = service.get("labels") or {}
            if isinstance(labels, list):
                labels = dict(entry.split("=", 1) for entry in labels)
            name = service.get("container_name") or f"{project}-{service_name}-1"
            container_id = self._add(name, labels, "running")
            if on_line:
                on_line(f"Container {name} Started")
            self.calls.append(("compose-started", container_id))

    async def compose_down(self, compose_path, project):
        self.calls.append(("compose-down", str(compose_path), project))
        for container_id in [c.id for c in self.containers.values() if c.name.startswith(project)]:
            del self.containers[container_id]

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]


class FakeRepository(RepositoryManager):
    """Clones by copying from a directory registered for the URL."""

    def __init__(self, bots_dir: Path, sources: Dict[str, Path]):
        super().__init__(bots_dir, FakeRunner())
        self.sources = sources
        self.pulled: List[str] = []

    async def clone(self, bot_id, url, branch="main"):
        source = self.sources.get(url)
        if source is None:
            raise RepositoryError("GIT_FAILED", f"Command failed: repository '{url}' not found")
        self.init_directories(bot_id)
        repo_path = self.repo_path(bot_id)
        shutil.rmtree(repo_path)
        shutil.copytree(source, repo_path)
        (repo_path / ".git").mkdir()
        self.create_raw_backup(bot_id)
        return repo_path

    async def pull(self, bot_id):
        self.pulled.append(bot_id)
        self.create_raw_backup(bot_id)

    async def info(self, bot_id):
        if not (self.repo_path(bot_id) / ".git").exists():
            return None
        return RepoInfo(branch="main", last_commit="abc1234", last_commit_message="init", last_commit_date="2024-01-01")

    async def check_updates(self, bot_id):
        return UpdateStatus(has_updates=True, behind_by=2, ahead_by=0)


@pytest.fixture
def temp_data_dir():
    """Temporary root holding the manager data dir, fake host DATA root and repo sources."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def _platform_env(data_root: Path) -> PlatformEnv:
    return PlatformEnv(
        puid="1000",
        pgid="1000",
        data_root=str(data_root),
        ref_net="pcs",
        ref_domain="example.test",
        ref_scheme="https",
        ref_port="443",
        ref_separator="-",
        ref_default_port="80",
        tz="UTC",
        user="root",
        pcs_data_root=str(data_root),
        pcs_default_password="casaos",
        pcs_domain="example.test",
        pcs_public_ip="",
        pcs_public_ipv6="",
        pcs_email="",
        default_user_name="admin",
        default_password="casaos",
        default_pwd="casaos",
        public_ip="",
        domain="example.test",
        smtp_host="",
        smtp_port="",
    )


def _settings(root: Path, mode: str) -> Settings:
    return Settings(
        port=8080,
        log_level="INFO",
        data_dir=root / "data",
        deployment_mode=mode,
        platform_container="",
        platform_user="ubuntu",
        docker_bin="docker",
        git_bin="git",
        quick_timeout_seconds=5,
        build_timeout_seconds=30,
        install_timeout_seconds=30,
        encryption_key="test-passphrase",
        platform=_platform_env(root / "DATA"),
    )


@pytest.fixture
def platform_env(temp_data_dir):
    return _platform_env(temp_data_dir / "DATA")


@pytest.fixture
def test_settings(temp_data_dir):
    """Settings for standalone docker deployment."""
    return _settings(temp_data_dir, "docker")


@pytest.fixture
def casaos_settings(temp_data_dir):
    """Settings for platform (casaos) deployment with a temporary DATA root."""
    return _settings(temp_data_dir, "casaos")


@pytest.fixture
def repo_sources() -> Dict[str, Path]:
    return {}


@pytest.fixture
def make_repo(temp_data_dir, repo_sources) -> Callable[..., str]:
    """Create a local repository source and return the URL that clones it."""

    def factory(name: str, files: Mapping[str, str]) -> str:
        source = temp_data_dir / "sources" / name
        for relative, content in files.items():
            path = source / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        source.mkdir(parents=True, exist_ok=True)
        url = f"https://github.com/example/{name}.git"
        repo_sources[url] = source
        return url

    return factory


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def fake_repository(test_settings, repo_sources):
    """Shared by both deployment modes; they use the same data dir."""
    return FakeRepository(test_settings.bots_dir, repo_sources)


@pytest.fixture
def context(test_settings, fake_runtime, fake_repository):
    return build_context(test_settings, runtime=fake_runtime, repository=fake_repository)


@pytest.fixture
def casaos_context(casaos_settings, fake_runtime, fake_repository):
    return build_context(casaos_settings, runtime=fake_runtime, repository=fake_repository)


@pytest.fixture
def manager(context):
    return context.manager


@pytest.fixture
def casaos_manager(casaos_context):
    return casaos_context.manager


@pytest.fixture
def client(test_settings, context):
    """Create test client with the fake runtime wired in."""
    app = create_app(test_settings, context)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def node_repo(make_repo):
    """A Node.js bot without compose file or Dockerfile."""
    return make_repo(
        "node-bot",
        {
            "package.json": '{"name": "node-bot", "main": "index.js", "dependencies": {"discord.js": "^14"}}',
            "index.js": "console.log('hi')\n",
            ".env.example": "# Bot token from the developer portal\nDISCORD_TOKEN=\nCLIENT_ID=\nPREFIX=!\n",
        },
    )


WORKER_COMPOSE = """\
name: worker-app
services:
  worker:
    image: foo/bar:latest
    environment:
      TOKEN: ${DISCORD_TOKEN}
      APP: $APP_ID
    volumes:
      - /DATA/AppData/$APP_ID/config:/config
    ports:
      - "8080:80"
x-casaos:
  main: worker
  build: worker
  pre-install-cmd: echo preparing
"""


@pytest.fixture
def worker_repo(make_repo):
    """A repository whose compose file marks service 'worker' as the build target."""
    return make_repo(
        "worker-bot",
        {
            "docker-compose.yml": WORKER_COMPOSE,
            "Dockerfile": "FROM alpine\n",
        },
    )
