"""
Provider Selection
==================

Classifies the AI provider from the base URL and model hint, and builds
the provider block and model allowlist for the gateway config.

Precedence: Google > OpenAI > Anthropic (default).
"""

from typing import Mapping

from ..schemas import ProviderKind, ProviderModel, ProviderSelection
from .env_builder import is_openai_url, normalize_base_url

ANTHROPIC_MODELS = [
    ProviderModel(id="claude-sonnet-4-5-20250929", name="Claude Sonnet 4.5", context_window=200000),
    ProviderModel(id="claude-haiku-4-5-20251001", name="Claude Haiku 4.5", context_window=200000),
    ProviderModel(id="claude-3-5-sonnet-latest", name="Claude 3.5 Sonnet", context_window=200000),
    ProviderModel(id="claude-3-opus-latest", name="Claude 3 Opus", context_window=200000),
]

OPENAI_MODELS = [
    ProviderModel(id="gpt-5.2", name="GPT-5.2", context_window=200000),
    ProviderModel(id="gpt-5", name="GPT-5", context_window=200000),
    ProviderModel(id="gpt-4.5-preview", name="GPT-4.5 Preview", context_window=128000),
]

GOOGLE_MODELS = [
    ProviderModel(id="gemini-3-flash", name="Gemini 3 Flash", context_window=1000000),
    ProviderModel(id="gemini-3-pro-preview", name="Gemini 3 Pro", context_window=2000000),
    ProviderModel(id="gemini-2.0-flash", name="Gemini 2.0 Flash", context_window=1000000),
]

DEFAULT_PRIMARY_MODELS = {
    ProviderKind.ANTHROPIC: "anthropic/claude-sonnet-4-5-20250929",
    ProviderKind.OPENAI: "openai/gpt-5.2",
    ProviderKind.GOOGLE: "google/gemini-3-flash",
}

ANTHROPIC_DEFAULT_BASE_URL = "https://api.anthropic.com"
GOOGLE_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"

# Provider blocks managed here; exactly one of them survives synthesis
MANAGED_PROVIDER_KEYS = ("anthropic", "openai", "google")

# Anthropic keeps its API key in the config file, the others read it from env
EMBED_ANTHROPIC_API_KEY = True


def classify_provider(base_url: str | None, model_hint: str | None) -> ProviderKind:
    """
    Decide which provider the gateway talks to.

    Args:
        base_url: Normalized base URL (may be None)
        model_hint: Configured model identifier, e.g. "google/gemini-3-flash"

    Returns:
        The provider kind
    """
    url = base_url or ""
    model = model_hint or ""

    if url.endswith("/google") or "gemini" in url or model.startswith("google/"):
        return ProviderKind.GOOGLE
    if url.endswith("/openai") or model.startswith("openai/"):
        return ProviderKind.OPENAI
    return ProviderKind.ANTHROPIC


def resolve_config_base_url(env: Mapping[str, str]) -> str | None:
    """Base URL the config is built against (gateway URL, then Anthropic)."""
    raw = env.get("AI_GATEWAY_BASE_URL") or env.get("ANTHROPIC_BASE_URL")
    return normalize_base_url(raw)


def select_provider(
    env: Mapping[str, str],
    embed_anthropic_key: bool = EMBED_ANTHROPIC_API_KEY,
) -> ProviderSelection:
    """
    Build the provider selection for the current environment.

    Args:
        env: Gateway process environment (output of build_env_vars)
        embed_anthropic_key: Store ANTHROPIC_API_KEY in the provider block

    Returns:
        ProviderSelection replacing any previous provider block
    """
    base_url = resolve_config_base_url(env)
    model_hint = env.get("CF_AI_GATEWAY_MODEL") or None
    kind = classify_provider(base_url, model_hint)
    primary = model_hint or DEFAULT_PRIMARY_MODELS[kind]

    if kind is ProviderKind.GOOGLE:
        if is_openai_url(base_url):
            # Gateway serves Gemini through its OpenAI-compatible endpoint,
            # so callers may address the model under either namespace
            aliases = {}
            for m in GOOGLE_MODELS:
                aliases[f"google/{m.id}"] = m.name
                aliases[f"openai/google/{m.id}"] = m.name
            return ProviderSelection(
                kind=kind,
                provider_key="openai",
                base_url=base_url,
                api="openai-responses",
                models=GOOGLE_MODELS,
                aliases=aliases,
                primary_model=primary,
            )
        return ProviderSelection(
            kind=kind,
            provider_key="google",
            base_url=base_url or GOOGLE_DEFAULT_BASE_URL,
            api="google-generative-ai",
            models=GOOGLE_MODELS,
            aliases={f"google/{m.id}": m.name for m in GOOGLE_MODELS},
            primary_model=primary,
        )

    if kind is ProviderKind.OPENAI:
        # No apiKey: the gateway falls back to OPENAI_API_KEY from env
        return ProviderSelection(
            kind=kind,
            provider_key="openai",
            base_url=base_url,
            api="openai-responses",
            models=OPENAI_MODELS,
            aliases={f"openai/{m.id}": m.name for m in OPENAI_MODELS},
            primary_model=primary,
        )

    api_key = env.get("ANTHROPIC_API_KEY") if embed_anthropic_key else None
    return ProviderSelection(
        kind=kind,
        provider_key="anthropic",
        base_url=base_url or ANTHROPIC_DEFAULT_BASE_URL,
        api="anthropic-messages",
        api_key=api_key or None,
        models=ANTHROPIC_MODELS,
        aliases={f"anthropic/{m.id}": m.name for m in ANTHROPIC_MODELS},
        primary_model=primary,
    )
