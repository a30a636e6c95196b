"""
Environment Builder
===================

Maps the sandbox's external secrets onto the variable names the gateway
process expects. Pure function, no side effects.
"""

from ..schemas import SandboxSecrets

# Cloudflare AI Gateway endpoint, completed with the provider path
AI_GATEWAY_URL_TEMPLATE = "https://gateway.ai.cloudflare.com/v1/{account_id}/{gateway_id}/{provider}"


def is_google_model(model: str | None) -> bool:
    """Check if a model identifier refers to a Gemini model."""
    if not model:
        return False
    return model.startswith("google/") or "gemini" in model


def normalize_base_url(url: str | None) -> str | None:
    """Strip trailing slashes from a base URL (None/empty stays None)."""
    if not url:
        return None
    return url.rstrip("/") or None


def is_openai_url(url: str | None) -> bool:
    """Check if a base URL points at an OpenAI-compatible surface."""
    return bool(url) and url.endswith("/openai")


def resolve_base_url(secrets: SandboxSecrets) -> str | None:
    """
    Resolve the AI gateway base URL.

    An explicit AI_GATEWAY_BASE_URL wins. Otherwise, when both account and
    gateway IDs are set, the Cloudflare AI Gateway URL is built. Gemini
    models go through the gateway's OpenAI-compatible path, everything else
    through the anthropic path.
    """
    if secrets.ai_gateway_base_url:
        return secrets.ai_gateway_base_url

    if secrets.cloudflare_ai_gateway_id and secrets.cf_account_id:
        provider = "openai" if is_google_model(secrets.cf_ai_gateway_model) else "anthropic"
        return AI_GATEWAY_URL_TEMPLATE.format(
            account_id=secrets.cf_account_id,
            gateway_id=secrets.cloudflare_ai_gateway_id,
            provider=provider,
        )
    return None


def build_env_vars(secrets: SandboxSecrets) -> dict[str, str]:
    """
    Build the environment passed to the gateway launch command.

    Args:
        secrets: Settings supplied to the sandbox

    Returns:
        Ordered mapping of variable name to value (unset inputs are omitted)
    """
    env_vars: dict[str, str] = {}

    base_url = normalize_base_url(resolve_base_url(secrets))
    openai_shaped = is_openai_url(base_url)

    # Gateway-scoped key takes precedence and follows the URL shape
    api_key = secrets.ai_gateway_api_key or secrets.cloudflare_ai_gateway_api_key
    if api_key:
        if openai_shaped:
            env_vars["OPENAI_API_KEY"] = api_key
        else:
            env_vars["ANTHROPIC_API_KEY"] = api_key

    # Direct provider keys only fill empty slots
    if "ANTHROPIC_API_KEY" not in env_vars and secrets.anthropic_api_key:
        env_vars["ANTHROPIC_API_KEY"] = secrets.anthropic_api_key
    if "OPENAI_API_KEY" not in env_vars and secrets.openai_api_key:
        env_vars["OPENAI_API_KEY"] = secrets.openai_api_key

    if base_url:
        env_vars["AI_GATEWAY_BASE_URL"] = base_url
        if openai_shaped:
            env_vars["OPENAI_BASE_URL"] = base_url
        else:
            env_vars["ANTHROPIC_BASE_URL"] = base_url
    elif secrets.anthropic_base_url:
        env_vars["ANTHROPIC_BASE_URL"] = secrets.anthropic_base_url

    # The container still uses the clawdbot variable names
    if secrets.moltbot_gateway_token:
        env_vars["CLAWDBOT_GATEWAY_TOKEN"] = secrets.moltbot_gateway_token
    if secrets.dev_mode:
        env_vars["CLAWDBOT_DEV_MODE"] = secrets.dev_mode
    if secrets.clawdbot_bind_mode:
        env_vars["CLAWDBOT_BIND_MODE"] = secrets.clawdbot_bind_mode

    # Channel settings only travel with their credential
    if secrets.telegram_bot_token:
        env_vars["TELEGRAM_BOT_TOKEN"] = secrets.telegram_bot_token
        if secrets.telegram_dm_policy:
            env_vars["TELEGRAM_DM_POLICY"] = secrets.telegram_dm_policy
        if secrets.telegram_dm_allow_from:
            env_vars["TELEGRAM_DM_ALLOW_FROM"] = secrets.telegram_dm_allow_from
    if secrets.discord_bot_token:
        env_vars["DISCORD_BOT_TOKEN"] = secrets.discord_bot_token
        if secrets.discord_dm_policy:
            env_vars["DISCORD_DM_POLICY"] = secrets.discord_dm_policy
    if secrets.slack_bot_token:
        env_vars["SLACK_BOT_TOKEN"] = secrets.slack_bot_token
    if secrets.slack_app_token:
        env_vars["SLACK_APP_TOKEN"] = secrets.slack_app_token

    if secrets.cdp_secret:
        env_vars["CDP_SECRET"] = secrets.cdp_secret
    if secrets.worker_url:
        env_vars["WORKER_URL"] = secrets.worker_url
    if secrets.cf_account_id:
        env_vars["CF_ACCOUNT_ID"] = secrets.cf_account_id
    if secrets.cf_ai_gateway_model:
        env_vars["CF_AI_GATEWAY_MODEL"] = secrets.cf_ai_gateway_model

    return env_vars
