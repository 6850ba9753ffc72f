"""Compose document transforms.

Every transform works on the parsed document (plain dicts and lists as produced by
``ComposeLoader``), mutates it in place and is idempotent: builds are retried, so
running a transform twice must give the same document as running it once.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .models import BotConfig, DetectionResult, app_name_for
from .schema import ComposeError, parse_port, parse_volume, validate_compose
from .substitution import substitute

logger = logging.getLogger(__name__)

COMPOSE_FILENAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
HOST_PATH_PREFIX = "/DATA"
MANAGED_BY = "discord-bot-manager"
METADATA_KEY = "x-casaos"

DB_IMAGE = "postgres:15-alpine"
DB_USER = "bot"
DB_PASSWORD = "bot_password"
DB_NAME = "bot_data"


def find_compose_file(repo_path: Path) -> Optional[Path]:
    for filename in COMPOSE_FILENAMES:
        candidate = repo_path / filename
        if candidate.is_file():
            return candidate
    return None


class ComposeLoader(yaml.SafeLoader):
    """SafeLoader that resolves plain scalars the way compose does (YAML 1.2 core).

    PyYAML follows YAML 1.1, where `22:22` is a base-60 integer and `on`/`yes`
    are booleans.
    """


_YAML11_TAGS = (
    "tag:yaml.org,2002:bool",
    "tag:yaml.org,2002:int",
    "tag:yaml.org,2002:float",
    "tag:yaml.org,2002:timestamp",
)

ComposeLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in _YAML11_TAGS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
ComposeLoader.add_implicit_resolver(
    "tag:yaml.org,2002:bool",
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list("tTfF"),
)
ComposeLoader.add_implicit_resolver(
    "tag:yaml.org,2002:int",
    re.compile(r"^(?:[-+]?(?:0|[1-9][0-9]*)|0x[0-9a-fA-F]+)$"),
    list("-+0123456789"),
)
ComposeLoader.add_implicit_resolver(
    "tag:yaml.org,2002:float",
    re.compile(
        r"^(?:[-+]?(?:\.[0-9]+|[0-9]+\.[0-9]*)(?:[eE][-+]?[0-9]+)?|[-+]?[0-9]+[eE][-+]?[0-9]+"
        r"|[-+]?\.(?:inf|Inf|INF)|\.(?:nan|NaN|NAN))$"
    ),
    list("-+0123456789."),
)


def load_compose(text: str) -> Dict[str, Any]:
    try:
        doc = yaml.load(text, Loader=ComposeLoader)
    except yaml.YAMLError as e:
        raise ComposeError(f"Invalid compose YAML: {e}") from e
    return validate_compose(doc)


def dump_compose(doc: Mapping[str, Any]) -> str:
    return yaml.safe_dump(
        dict(doc),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=4096,
    )


def _services(doc: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    services = doc.get("services")
    if not isinstance(services, dict):
        raise ComposeError("Compose document has no services mapping")
    return services


def _metadata(doc: Mapping[str, Any]) -> Dict[str, Any]:
    metadata = doc.get(METADATA_KEY)
    return metadata if isinstance(metadata, dict) else {}


def main_service_name(doc: Mapping[str, Any]) -> Optional[str]:
    main = _metadata(doc).get("main")
    if isinstance(main, str) and main:
        return main
    services = doc.get("services")
    if isinstance(services, dict) and services:
        return next(iter(services))
    return None


def _rewrite_prefix(source: str, prefix: str, data_root: str) -> str:
    if source == data_root or source.startswith((data_root + "/", data_root + ":")):
        return source
    if source == prefix or source.startswith(prefix + "/") or source.startswith(prefix + ":"):
        return data_root + source[len(prefix):]
    return source


def rewrite_host_paths(doc: Dict[str, Any], data_root: str, prefix: str = HOST_PATH_PREFIX) -> Dict[str, Any]:
    if data_root == prefix:
        return doc
    for service in _services(doc).values():
        volumes = service.get("volumes")
        if not isinstance(volumes, list):
            continue
        for i, entry in enumerate(volumes):
            if isinstance(entry, str):
                volumes[i] = _rewrite_prefix(entry, prefix, data_root)
            elif isinstance(entry, dict) and isinstance(entry.get("source"), str):
                entry["source"] = _rewrite_prefix(entry["source"], prefix, data_root)
    return doc


def inject_network(doc: Dict[str, Any], network: str) -> Dict[str, Any]:
    if not network:
        return doc

    services = _services(doc)
    main = main_service_name(doc)
    service = services.get(main) if main else None
    if service is not None:
        network_mode = service.get("network_mode")
        if not network_mode or network_mode == "bridge":
            networks = service.get("networks")
            if networks is None:
                service["networks"] = [network]
            elif isinstance(networks, list):
                if network not in networks:
                    networks.append(network)
            elif isinstance(networks, dict):
                if network not in networks:
                    networks[network] = {}

    top_level = doc.get("networks")
    if not isinstance(top_level, dict):
        top_level = {}
        doc["networks"] = top_level
    if not top_level.get(network):
        top_level[network] = {"external": True}
    return doc


def _env_keys(environment: Any) -> List[str]:
    if isinstance(environment, dict):
        return [str(k).upper() for k in environment.keys()]
    if isinstance(environment, list):
        return [str(entry).split("=", 1)[0].upper() for entry in environment]
    return []


def inject_identity_env(doc: Dict[str, Any], puid: str, pgid: str) -> Dict[str, Any]:
    for service in _services(doc).values():
        environment = service.get("environment")
        if environment is None:
            environment = {}
            service["environment"] = environment
        present = set(_env_keys(environment))
        for key, value in (("PUID", puid), ("PGID", pgid)):
            if key in present:
                continue
            if isinstance(environment, list):
                environment.append(f"{key}={value}")
            else:
                environment[key] = value
    return doc


def ports_to_expose(doc: Dict[str, Any]) -> Dict[str, Any]:
    for service in _services(doc).values():
        ports = service.get("ports")
        if ports is None:
            continue

        exposed: List[str] = []
        existing = service.get("expose")
        if isinstance(existing, list):
            exposed.extend(str(p) for p in existing)

        for entry in ports if isinstance(ports, list) else []:
            port = parse_port(entry).container_port
            if port and port not in exposed:
                exposed.append(port)

        if exposed:
            service["expose"] = exposed
        del service["ports"]
    return doc


def _set_label(service: Dict[str, Any], key: str, value: str, override: bool = False) -> None:
    labels = service.get("labels")
    if labels is None:
        labels = {}
        service["labels"] = labels
    if isinstance(labels, dict):
        if override or key not in labels:
            labels[key] = value
    elif isinstance(labels, list):
        keys = [str(entry).split("=", 1)[0] for entry in labels]
        if key in keys:
            if override:
                labels[keys.index(key)] = f"{key}={value}"
        else:
            labels.append(f"{key}={value}")


def apply_platform_metadata(
    doc: Dict[str, Any],
    app_name: str,
    domain: str = "localhost",
    separator: str = "-",
) -> Dict[str, Any]:
    services = _services(doc)
    main = main_service_name(doc)
    metadata = doc.get(METADATA_KEY)
    if not isinstance(metadata, dict):
        metadata = {}
        doc[METADATA_KEY] = metadata

    service = services.get(main) if main else None
    if service is not None:
        service["hostname"] = app_name
        icon = metadata.get("icon")
        if isinstance(icon, str) and icon:
            _set_label(service, "icon", icon, override=True)

    metadata["is_uncontrolled"] = False
    metadata["store_app_id"] = app_name
    if domain and domain != "localhost":
        metadata["hostname"] = f"{app_name}{separator}{domain}"
    return doc


def inject_labels(doc: Dict[str, Any], bot: BotConfig) -> Dict[str, Any]:
    for service in _services(doc).values():
        _set_label(service, "managed-by", MANAGED_BY)
        _set_label(service, "bot-id", bot.id)
        _set_label(service, "bot-name", bot.name)
    return doc


def extract_build_target(doc: Mapping[str, Any]) -> Optional[str]:
    target = _metadata(doc).get("build")
    if isinstance(target, str) and target.strip():
        return target.strip()
    return None


def substitute_build_target(
    doc: Dict[str, Any],
    service_name: str,
    context: Path,
    image: str,
    dockerfile: str = "Dockerfile",
) -> Dict[str, Any]:
    services = _services(doc)
    service = services.get(service_name)
    if service is None:
        raise ComposeError(f"Build target '{service_name}' is not a service in the compose document")

    build = {"context": str(context), "dockerfile": dockerfile}
    logger.info("Service %s builds %s from %s", service_name, image, context)
    if "image" not in service:
        service["build"] = build
        service["image"] = image
        return doc

    rebuilt: Dict[str, Any] = {}
    for key, value in service.items():
        if key == "build":
            continue
        if key == "image":
            rebuilt["build"] = build
            rebuilt["image"] = image
        else:
            rebuilt[key] = value
    services[service_name] = rebuilt
    return doc


def default_metadata(bot: BotConfig, build: Optional[str] = None) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "architectures": ["amd64", "arm64"],
        "main": "bot",
    }
    if build:
        metadata["build"] = build
    metadata.update(
        {
            "author": MANAGED_BY,
            "developer": MANAGED_BY,
            "tagline": {"en_us": f"Discord Bot: {bot.name}"},
            "category": "Utilities",
            "description": {"en_us": f"Managed Discord bot: {bot.name}"},
            "title": {"en_us": bot.name},
        }
    )
    return metadata


def _data_volume(bot_dir: Path) -> Dict[str, Any]:
    return {"type": "bind", "source": str(bot_dir / "data"), "target": "/app/data"}


def _data_volume_description() -> Dict[str, Any]:
    return {
        "volumes": [
            {"container": "/app/data", "description": {"en_us": "Persistent data directory for bot storage."}}
        ]
    }


def _add_database_service(doc: Dict[str, Any], app_name: str, network: str) -> None:
    volume_name = f"{app_name}-db-data"
    services = doc["services"]
    services["db"] = {
        "image": DB_IMAGE,
        "container_name": f"{app_name}-db",
        "restart": "unless-stopped",
        "networks": [network],
        "environment": {
            "POSTGRES_USER": DB_USER,
            "POSTGRES_PASSWORD": DB_PASSWORD,
            "POSTGRES_DB": DB_NAME,
        },
        "volumes": [{"type": "volume", "source": volume_name, "target": "/var/lib/postgresql/data"}],
        "labels": {"service-type": "database"},
        METADATA_KEY: {
            "volumes": [
                {"container": "/var/lib/postgresql/data", "description": {"en_us": "PostgreSQL database storage."}}
            ]
        },
    }

    bot_service = services["bot"]
    bot_service["depends_on"] = ["db"]
    environment = bot_service.setdefault("environment", {})
    environment["DATABASE_URL"] = f"postgresql://{DB_USER}:{DB_PASSWORD}@db:5432/{DB_NAME}"

    volumes = doc.setdefault("volumes", {})
    volumes[volume_name] = {}


def generate_compose(bot: BotConfig, detection: DetectionResult, bot_dir: Path, network: str = "pcs") -> Dict[str, Any]:
    """Synthesize a compose document for a repository that ships none."""
    app_name = app_name_for(bot.id)

    service: Dict[str, Any] = {
        "build": {"context": str(bot_dir / "repo"), "dockerfile": "Dockerfile"},
        "container_name": f"{app_name}-app",
        "restart": "unless-stopped",
    }
    if bot.env_vars:
        service["environment"] = dict(bot.env_vars)
    service["volumes"] = [_data_volume(bot_dir)]
    service["networks"] = [network]
    service[METADATA_KEY] = _data_volume_description()

    doc: Dict[str, Any] = {
        "name": app_name,
        "services": {"bot": service},
        "networks": {network: {"external": True}},
    }

    if detection.has_database and not detection.has_compose:
        _add_database_service(doc, app_name, network)

    doc[METADATA_KEY] = default_metadata(bot, build="bot")
    return validate_compose(doc)


def generate_image_compose(bot: BotConfig, bot_dir: Path, network: str = "pcs") -> Dict[str, Any]:
    if not bot.image_ref:
        raise ComposeError("imageRef is required for image source type")

    app_name = app_name_for(bot.id)
    environment = dict(bot.env_vars)
    if bot.update_token:
        environment["BOT_MANAGER_UPDATE_TOKEN"] = bot.update_token

    service: Dict[str, Any] = {
        "image": bot.image_ref,
        "container_name": f"{app_name}-app",
        "restart": "unless-stopped",
    }
    if environment:
        service["environment"] = environment
    service["volumes"] = [_data_volume(bot_dir)]
    service["networks"] = [network]
    service[METADATA_KEY] = _data_volume_description()

    doc: Dict[str, Any] = {
        "name": app_name,
        "services": {"bot": service},
        "networks": {network: {"external": True}},
        METADATA_KEY: default_metadata(bot),
    }
    return validate_compose(doc)


def adapt_existing_compose(
    text: str,
    bot: BotConfig,
    variables: Dict[str, str],
    network: str = "pcs",
) -> Dict[str, Any]:
    """Turn a repository-provided compose file into a deployable document."""
    doc = load_compose(substitute(text, variables))

    doc.pop("version", None)
    if not doc.get("name"):
        doc = {"name": app_name_for(bot.id), **doc}

    inject_network(doc, network)
    inject_labels(doc, bot)

    if METADATA_KEY not in doc:
        logger.debug("Compose for bot %s has no %s block, using defaults", bot.id, METADATA_KEY)
        doc[METADATA_KEY] = default_metadata(bot)
        main = next(iter(_services(doc)))
        doc[METADATA_KEY]["main"] = main
    return doc


def bind_sources(doc: Mapping[str, Any]) -> List[str]:
    sources: List[str] = []
    for service in _services(doc).values():
        for entry in service.get("volumes") or []:
            spec = parse_volume(entry)
            if spec.is_bind and spec.source and spec.source not in sources:
                sources.append(spec.source)
    return sources


def image_services(doc: Mapping[str, Any]) -> Dict[str, str]:
    """Map service name to image tag for services that declare one."""
    out: Dict[str, str] = {}
    for name, service in _services(doc).items():
        image = service.get("image")
        if isinstance(image, str) and image:
            out[name] = image
    return out
