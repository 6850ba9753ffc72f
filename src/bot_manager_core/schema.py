from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union


class ComposeError(ValueError):
    pass


@dataclass(frozen=True)
class ShortVolume:
    """``source:target[:mode]`` or a bare ``target`` (anonymous volume)."""

    source: Optional[str]
    target: str
    mode: Optional[str] = None

    @property
    def is_bind(self) -> bool:
        return self.source is not None and _looks_like_path(self.source)

    @property
    def named_volume(self) -> Optional[str]:
        if self.source is None or self.is_bind:
            return None
        return self.source

    def render(self) -> str:
        parts = [p for p in (self.source, self.target, self.mode) if p is not None]
        return ":".join(parts)


@dataclass(frozen=True)
class LongVolume:
    type: str
    source: Optional[str]
    target: str

    @property
    def is_bind(self) -> bool:
        return self.type == "bind"

    @property
    def named_volume(self) -> Optional[str]:
        if self.type == "volume" and self.source:
            return self.source
        return None


VolumeSpec = Union[ShortVolume, LongVolume]


@dataclass(frozen=True)
class PortString:
    raw: str

    @property
    def container_port(self) -> str:
        # "ip:host:container/proto", "host:container", "container"
        return self.raw.split(":")[-1].split("/")[0]


@dataclass(frozen=True)
class PortStruct:
    target: str
    published: Optional[str] = None
    protocol: Optional[str] = None

    @property
    def container_port(self) -> str:
        return self.target


PortSpec = Union[PortString, PortStruct]


def _looks_like_path(source: str) -> bool:
    return source.startswith(("/", ".", "~", "$"))


def _split_short_volume(entry: str) -> List[str]:
    # ":" inside "${VAR:-default}" is not a separator
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    i = 0
    while i < len(entry):
        char = entry[i]
        if entry.startswith("${", i):
            depth += 1
            current.append("${")
            i += 2
            continue
        if char == "}" and depth:
            depth -= 1
        elif char == ":" and not depth:
            parts.append("".join(current))
            current = []
            i += 1
            continue
        current.append(char)
        i += 1
    parts.append("".join(current))
    return parts


def parse_volume(entry: Any) -> VolumeSpec:
    if isinstance(entry, str):
        if not entry:
            raise ComposeError("Empty volume entry")
        parts = _split_short_volume(entry)
        if len(parts) == 1:
            return ShortVolume(source=None, target=parts[0])
        if len(parts) == 2:
            return ShortVolume(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return ShortVolume(source=parts[0], target=parts[1], mode=parts[2])
        raise ComposeError(f"Invalid volume entry '{entry}'")

    if isinstance(entry, Mapping):
        target = entry.get("target")
        if not isinstance(target, str) or not target:
            raise ComposeError(f"Volume entry missing target: {dict(entry)}")
        vol_type = entry.get("type", "volume")
        if vol_type not in {"bind", "volume", "tmpfs", "npipe", "cluster"}:
            raise ComposeError(f"Unknown volume type '{vol_type}'")
        source = entry.get("source")
        if source is not None and not isinstance(source, str):
            raise ComposeError(f"Volume source must be a string: {dict(entry)}")
        if vol_type == "bind" and not source:
            raise ComposeError(f"Bind volume missing source: {dict(entry)}")
        return LongVolume(type=str(vol_type), source=source, target=target)

    raise ComposeError(f"Unsupported volume entry: {entry!r}")


def parse_port(entry: Any) -> PortSpec:
    if isinstance(entry, bool):
        raise ComposeError(f"Unsupported port entry: {entry!r}")
    if isinstance(entry, (str, int)):
        raw = str(entry)
        if not raw.split(":")[-1].split("/")[0]:
            raise ComposeError(f"Invalid port entry '{raw}'")
        return PortString(raw=raw)
    if isinstance(entry, Mapping):
        target = entry.get("target")
        if target is None or isinstance(target, bool):
            raise ComposeError(f"Port entry missing target: {dict(entry)}")
        published = entry.get("published")
        protocol = entry.get("protocol")
        return PortStruct(
            target=str(target),
            published=str(published) if published is not None else None,
            protocol=str(protocol) if protocol is not None else None,
        )
    raise ComposeError(f"Unsupported port entry: {entry!r}")


def _depends_on_names(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, Mapping):
        return [str(k) for k in value.keys()]
    if value is None:
        return []
    raise ComposeError(f"Invalid depends_on: {value!r}")


def validate_compose(doc: Any) -> Dict[str, Any]:
    """Check the document shape and return it unchanged.

    Raises ComposeError when the document cannot be transformed safely.
    """
    if not isinstance(doc, dict):
        raise ComposeError("Compose document must be a mapping")

    services = doc.get("services")
    if not isinstance(services, dict) or not services:
        raise ComposeError("Compose document must declare at least one service")

    declared_volumes = doc.get("volumes") or {}
    if not isinstance(declared_volumes, dict):
        raise ComposeError("Top-level volumes must be a mapping")

    for name, service in services.items():
        if not isinstance(service, dict):
            raise ComposeError(f"Service '{name}' must be a mapping")

        for dep in _depends_on_names(service.get("depends_on")):
            if dep not in services:
                raise ComposeError(f"Service '{name}' depends on unknown service '{dep}'")

        volumes = service.get("volumes")
        if volumes is not None:
            if not isinstance(volumes, list):
                raise ComposeError(f"Service '{name}' volumes must be a list")
            for entry in volumes:
                spec = parse_volume(entry)
                named = spec.named_volume
                if named is not None and named not in declared_volumes:
                    raise ComposeError(f"Service '{name}' uses undeclared volume '{named}'")

        ports = service.get("ports")
        if ports is not None:
            if not isinstance(ports, list):
                raise ComposeError(f"Service '{name}' ports must be a list")
            for entry in ports:
                parse_port(entry)

        environment = service.get("environment")
        if environment is not None and not isinstance(environment, (list, dict)):
            raise ComposeError(f"Service '{name}' environment must be a list or mapping")

    metadata = doc.get("x-casaos")
    if metadata is not None and not isinstance(metadata, dict):
        raise ComposeError("x-casaos must be a mapping")

    return doc
