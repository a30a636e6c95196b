"""
Config Synthesizer
==================

Builds the gateway config (clawdbot.json) from the existing file, the
optional template and the gateway process environment.

The whole document is rebuilt in memory and written once, atomically.
Running twice with the same inputs produces byte-identical output.
"""

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

from ..config import AGENT_WORKSPACE, GATEWAY_PORT, TRUSTED_PROXIES
from ..exceptions import ConfigWriteError
from ..schemas import ProviderSelection
from .providers import EMBED_ANTHROPIC_API_KEY, MANAGED_PROVIDER_KEYS, select_provider

logger = logging.getLogger(__name__)


def default_config() -> dict:
    """Minimal config used when neither a config nor a template exists."""
    return {
        "agents": {
            "defaults": {
                "workspace": AGENT_WORKSPACE,
            },
        },
        "gateway": {
            "port": GATEWAY_PORT,
            "mode": "local",
        },
    }


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def load_config(
    config_file: Path,
    template_file: Path | None = None,
    log: logging.Logger = logger,
) -> dict:
    """
    Load the existing config, falling back to the template or a skeleton.

    A config that exists but can't be parsed starts over from an empty
    document rather than aborting startup.
    """
    if config_file.exists():
        log.info("Using existing config")
        source = config_file
    elif template_file is not None and template_file.is_file():
        log.info("No existing config found, initializing from template...")
        source = template_file
    else:
        log.info("No existing config found, using minimal config")
        return default_config()

    try:
        data = _read_json(source)
    except (OSError, ValueError) as e:
        log.warning(f"Could not parse {source}, starting with empty config: {e}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"{source} is not a JSON object, starting with empty config")
        return {}
    return data


def _section(parent: dict, key: str) -> dict:
    """Get a nested dict, replacing missing or non-dict values."""
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def purge_invalid_providers(config: dict, log: logging.Logger = logger) -> list[str]:
    """
    Remove provider blocks written by older versions without model names.

    Returns:
        Keys of the removed provider blocks
    """
    models_section = config.get("models")
    providers = models_section.get("providers") if isinstance(models_section, dict) else None
    if not isinstance(providers, dict):
        return []

    removed = []
    for key in list(providers):
        block = providers[key]
        models = block.get("models") if isinstance(block, dict) else None
        if not isinstance(models, list):
            continue
        if any(not isinstance(m, dict) or not m.get("name") for m in models):
            log.info(f"Removing broken {key} provider config (missing model names)")
            del providers[key]
            removed.append(key)
    return removed


def apply_gateway_settings(config: dict, env: Mapping[str, str]) -> None:
    """Pin port, mode and proxies; add token auth and dev-mode UI access."""
    gateway = _section(config, "gateway")
    gateway["port"] = GATEWAY_PORT
    gateway["mode"] = "local"
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)

    token = env.get("CLAWDBOT_GATEWAY_TOKEN")
    if token:
        _section(gateway, "auth")["token"] = token

    if env.get("CLAWDBOT_DEV_MODE") == "true":
        _section(gateway, "controlUi")["allowInsecureAuth"] = True


def apply_channel_settings(config: dict, env: Mapping[str, str]) -> None:
    """Enable chat channels whose credentials are present."""
    channels = _section(config, "channels")

    telegram_token = env.get("TELEGRAM_BOT_TOKEN")
    if telegram_token:
        telegram = _section(channels, "telegram")
        telegram["botToken"] = telegram_token
        telegram["enabled"] = True
        policy = env.get("TELEGRAM_DM_POLICY") or "pairing"
        telegram["dmPolicy"] = policy
        allow_from = env.get("TELEGRAM_DM_ALLOW_FROM")
        if allow_from:
            telegram["allowFrom"] = allow_from.split(",")
        elif policy == "open":
            # "open" policy requires an explicit wildcard
            telegram["allowFrom"] = ["*"]

    discord_token = env.get("DISCORD_BOT_TOKEN")
    if discord_token:
        discord = _section(channels, "discord")
        discord["token"] = discord_token
        discord["enabled"] = True
        policy = env.get("DISCORD_DM_POLICY") or "pairing"
        # Discord nests its DM policy under "dm"
        dm = _section(discord, "dm")
        dm["policy"] = policy
        if policy == "open":
            dm["allowFrom"] = ["*"]

    slack_bot = env.get("SLACK_BOT_TOKEN")
    slack_app = env.get("SLACK_APP_TOKEN")
    if slack_bot and slack_app:
        slack = _section(channels, "slack")
        slack["botToken"] = slack_bot
        slack["appToken"] = slack_app
        slack["enabled"] = True


def apply_provider(config: dict, selection: ProviderSelection, log: logging.Logger = logger) -> None:
    """
    Install the selected provider block, allowlist and primary model.

    Other managed provider blocks are dropped so exactly one remains.
    """
    providers = _section(_section(config, "models"), "providers")
    for key in MANAGED_PROVIDER_KEYS:
        if key != selection.provider_key and key in providers:
            log.info(f"Dropping inactive {key} provider config")
            del providers[key]

    log.info(
        f"Configuring {selection.kind.value} provider "
        f"(block: {selection.provider_key}, base URL: {selection.base_url or 'default'})"
    )
    providers[selection.provider_key] = selection.provider_block()

    defaults = _section(_section(config, "agents"), "defaults")
    allowlist = _section(defaults, "models")
    for model_ref, display_name in selection.aliases.items():
        allowlist[model_ref] = {"alias": display_name}

    _section(defaults, "model")["primary"] = selection.primary_model


def build_config(
    existing: dict,
    env: Mapping[str, str],
    embed_anthropic_key: bool = EMBED_ANTHROPIC_API_KEY,
    log: logging.Logger = logger,
) -> dict:
    """
    Produce the full config document for the given environment.

    Args:
        existing: Loaded config (left untouched)
        env: Gateway process environment

    Returns:
        New config dict
    """
    config = copy.deepcopy(existing)

    # Make sure the sections we write to exist
    _section(_section(_section(config, "agents"), "defaults"), "model")
    _section(config, "gateway")
    _section(config, "channels")

    purge_invalid_providers(config, log)
    apply_gateway_settings(config, env)
    apply_channel_settings(config, env)
    apply_provider(config, select_provider(env, embed_anthropic_key), log)
    return config


def render_config(config: dict) -> str:
    """Serialize a config the way it is stored on disk."""
    return json.dumps(config, indent=2) + "\n"


def write_config(config_file: Path, config: dict) -> None:
    """
    Persist the config atomically (temp file + rename).

    Raises:
        ConfigWriteError: If the file can't be written
    """
    content = render_config(config)
    tmp_path = None
    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=config_file.parent, prefix=f".{config_file.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, config_file)
    except OSError as e:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise ConfigWriteError(f"Failed to write config {config_file}: {e}") from e


def synthesize_config(
    config_file: Path,
    env: Mapping[str, str],
    template_file: Path | None = None,
    embed_anthropic_key: bool = EMBED_ANTHROPIC_API_KEY,
    log: logging.Logger = logger,
) -> dict:
    """
    Load, rebuild and persist the gateway config.

    Args:
        config_file: Path of clawdbot.json
        env: Gateway process environment
        template_file: Optional template for a first boot

    Returns:
        The written config

    Raises:
        ConfigWriteError: If persisting fails (startup must abort)
    """
    log.info(f"Updating config at: {config_file}")
    existing = load_config(config_file, template_file, log)
    config = build_config(existing, env, embed_anthropic_key, log)
    write_config(config_file, config)
    log.info("Configuration updated successfully")
    return config
