"""Placeholder substitution for compose documents.

Compose files shipped in bot repositories reference platform values such as
``$APP_ID`` or ``${DATA_ROOT}``. The variable map is built from the bot's identity,
the host platform environment and the bot's own env vars (highest precedence).
"""

from __future__ import annotations

import re
import secrets
from typing import Dict, List

from .models import BotConfig, app_name_for
from .settings import PlatformEnv

REQUIRED_VARIABLES = ("DISCORD_TOKEN", "CLIENT_ID")

_BRACE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_BARE_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)(?![A-Za-z0-9_])")


def generate_hash() -> str:
    return secrets.token_hex(32)


def ensure_tokens(bot: BotConfig) -> bool:
    """Fill in missing identity tokens. Returns True when the bot changed.

    Existing tokens are never replaced; the caller persists the bot when this
    returns True.
    """
    changed = False
    if not bot.auth_hash:
        bot.auth_hash = generate_hash()
        changed = True
    if not bot.update_token:
        bot.update_token = generate_hash()
        changed = True
    return changed


def build_variables(bot: BotConfig, platform: PlatformEnv) -> Dict[str, str]:
    ensure_tokens(bot)

    variables: Dict[str, str] = {
        "APP_ID": app_name_for(bot.id),
        "AUTH_HASH": bot.auth_hash or "",
        "API_HASH": bot.update_token or "",
        "BOT_MANAGER_API": f"{platform.ref_scheme}://{platform.ref_domain}:{platform.ref_port}",
        "PUID": platform.puid,
        "PGID": platform.pgid,
        "REF_DOMAIN": platform.ref_domain,
        "REF_SCHEME": platform.ref_scheme,
        "REF_PORT": platform.ref_port,
        "REF_SEPARATOR": platform.ref_separator,
        "REF_NET": platform.ref_net,
        "REF_DEFAULT_PORT": platform.ref_default_port,
        "DATA_ROOT": platform.data_root,
        "TZ": platform.tz,
        "USER": platform.user,
        "PCS_DATA_ROOT": platform.pcs_data_root,
        "PCS_DEFAULT_PASSWORD": platform.pcs_default_password,
        "PCS_DOMAIN": platform.pcs_domain,
        "PCS_PUBLIC_IP": platform.pcs_public_ip,
        "PCS_PUBLIC_IPV6": platform.pcs_public_ipv6,
        "PCS_EMAIL": platform.pcs_email,
        "DefaultUserName": platform.default_user_name,
        "DefaultPassword": platform.default_password,
        "default_pwd": platform.default_pwd,
        "public_ip": platform.public_ip,
        "domain": platform.domain,
        "SMTP_HOST": platform.smtp_host,
        "SMTP_PORT": platform.smtp_port,
    }

    for key, value in bot.env_vars.items():
        variables[key] = value

    return variables


def substitute(document: str, variables: Dict[str, str]) -> str:
    result = document
    for name, value in variables.items():
        # brace form first so "$NAME" never eats the head of "${NAME}"
        result = result.replace("${" + name + "}", value)
        pattern = re.compile(r"\$" + re.escape(name) + r"(?![A-Za-z0-9_])")
        result = pattern.sub(lambda _m: value, result)
    return result


def validate_required(document: str, bot: BotConfig) -> List[str]:
    missing: List[str] = []
    for name in REQUIRED_VARIABLES:
        pattern = re.compile(r"\$(?:\{" + name + r"\}|" + name + r"(?![A-Za-z0-9_]))")
        if pattern.search(document) and not bot.env_vars.get(name):
            missing.append(name)
    return missing


def extract_variables(document: str) -> List[str]:
    names = set(_BRACE_RE.findall(document))
    names.update(_BARE_RE.findall(document))
    return sorted(names)
