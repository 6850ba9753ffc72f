from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class PlatformEnv:
    puid: str
    pgid: str
    data_root: str
    ref_net: str
    ref_domain: str
    ref_scheme: str
    ref_port: str
    ref_separator: str
    ref_default_port: str
    tz: str
    user: str
    pcs_data_root: str
    pcs_default_password: str
    pcs_domain: str
    pcs_public_ip: str
    pcs_public_ipv6: str
    pcs_email: str
    default_user_name: str
    default_password: str
    default_pwd: str
    public_ip: str
    domain: str
    smtp_host: str
    smtp_port: str


@dataclass(frozen=True)
class Settings:
    port: int
    log_level: str
    data_dir: Path
    deployment_mode: str | None
    platform_container: str
    platform_user: str
    docker_bin: str
    git_bin: str
    quick_timeout_seconds: float
    build_timeout_seconds: float
    install_timeout_seconds: float
    encryption_key: str | None
    platform: PlatformEnv

    @property
    def registry_file(self) -> Path:
        return self.data_dir / "bots.json"

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def bots_dir(self) -> Path:
        return self.data_dir / "bots"


def load_platform_env() -> PlatformEnv:
    data_root = os.getenv("DATA_ROOT", "/DATA")
    pcs_default_password = os.getenv("PCS_DEFAULT_PASSWORD") or os.getenv("default_pwd") or "casaos"
    pcs_domain = os.getenv("PCS_DOMAIN") or os.getenv("domain") or ""
    pcs_public_ip = os.getenv("PCS_PUBLIC_IP") or os.getenv("public_ip") or ""

    return PlatformEnv(
        puid=os.getenv("PUID", "1000"),
        pgid=os.getenv("PGID", "1000"),
        data_root=data_root,
        ref_net=os.getenv("REF_NET", "pcs"),
        ref_domain=os.getenv("REF_DOMAIN", "localhost"),
        ref_scheme=os.getenv("REF_SCHEME", "http"),
        ref_port=os.getenv("REF_PORT", "80"),
        ref_separator=os.getenv("REF_SEPARATOR", "-"),
        ref_default_port=os.getenv("REF_DEFAULT_PORT", "80"),
        tz=os.getenv("TZ", "UTC"),
        user=os.getenv("USER", "root"),
        pcs_data_root=os.getenv("PCS_DATA_ROOT", data_root),
        pcs_default_password=pcs_default_password,
        pcs_domain=pcs_domain,
        pcs_public_ip=pcs_public_ip,
        pcs_public_ipv6=os.getenv("PCS_PUBLIC_IPV6", ""),
        pcs_email=os.getenv("PCS_EMAIL", ""),
        default_user_name=os.getenv("DefaultUserName", "admin"),
        default_password=os.getenv("DefaultPassword") or pcs_default_password,
        default_pwd=os.getenv("default_pwd") or pcs_default_password,
        public_ip=os.getenv("public_ip") or pcs_public_ip,
        domain=os.getenv("domain") or pcs_domain,
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=os.getenv("SMTP_PORT", ""),
    )


def load_settings() -> Settings:
    port = int(os.getenv("PORT", "8080"))
    log_level = os.getenv("LOG_LEVEL", "INFO")

    data_dir = Path(os.getenv("DATA_DIR", "/data/data"))

    mode_env = os.getenv("DEPLOYMENT_MODE", "auto").lower()
    deployment_mode = mode_env if mode_env in {"casaos", "docker"} else None

    quick_timeout_seconds = float(os.getenv("QUICK_TIMEOUT_SECONDS", "30"))
    build_timeout_seconds = float(os.getenv("BUILD_TIMEOUT_SECONDS", "600"))
    install_timeout_seconds = float(os.getenv("INSTALL_TIMEOUT_SECONDS", "300"))

    return Settings(
        port=port,
        log_level=log_level,
        data_dir=data_dir,
        deployment_mode=deployment_mode,
        platform_container=os.getenv("PLATFORM_CONTAINER", "casaos"),
        platform_user=os.getenv("PLATFORM_USER", "ubuntu"),
        docker_bin=os.getenv("DOCKER_BIN", "docker"),
        git_bin=os.getenv("GIT_BIN", "git"),
        quick_timeout_seconds=quick_timeout_seconds,
        build_timeout_seconds=build_timeout_seconds,
        install_timeout_seconds=install_timeout_seconds,
        encryption_key=os.getenv("ENV_ENCRYPTION_KEY") or None,
        platform=load_platform_env(),
    )
