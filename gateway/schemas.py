"""
Pydantic Schemas
================

Data models shared by the gateway lifecycle services.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ============================================================================
# Process Schemas
# ============================================================================

ProcessStatus = Literal["starting", "running", "completed", "exited", "error", "killed"]


class ProcessRecord(BaseModel):
    """A process as reported by the sandbox platform."""
    id: str
    command: str
    status: ProcessStatus = "starting"


class ProcessLogs(BaseModel):
    """Captured output of a sandbox process."""
    stdout: str = ""
    stderr: str = ""


# ============================================================================
# Secrets / Environment Schemas
# ============================================================================

class SandboxSecrets(BaseModel):
    """
    Settings supplied to the sandbox from outside (secrets and vars).

    Field aliases are the environment variable names, so an environment
    mapping validates directly. Empty strings count as unset.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # AI gateway
    ai_gateway_base_url: str | None = Field(default=None, alias="AI_GATEWAY_BASE_URL")
    ai_gateway_api_key: str | None = Field(default=None, alias="AI_GATEWAY_API_KEY")
    cloudflare_ai_gateway_api_key: str | None = Field(default=None, alias="CLOUDFLARE_AI_GATEWAY_API_KEY")
    cloudflare_ai_gateway_id: str | None = Field(default=None, alias="CLOUDFLARE_AI_GATEWAY_ID")
    cf_account_id: str | None = Field(default=None, alias="CF_ACCOUNT_ID")
    cf_ai_gateway_model: str | None = Field(default=None, alias="CF_AI_GATEWAY_MODEL")

    # Direct provider access
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    anthropic_base_url: str | None = Field(default=None, alias="ANTHROPIC_BASE_URL")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")

    # Gateway behaviour
    moltbot_gateway_token: str | None = Field(default=None, alias="MOLTBOT_GATEWAY_TOKEN")
    dev_mode: str | None = Field(default=None, alias="DEV_MODE")
    clawdbot_bind_mode: str | None = Field(default=None, alias="CLAWDBOT_BIND_MODE")

    # Channels
    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_dm_policy: str | None = Field(default=None, alias="TELEGRAM_DM_POLICY")
    telegram_dm_allow_from: str | None = Field(default=None, alias="TELEGRAM_DM_ALLOW_FROM")
    discord_bot_token: str | None = Field(default=None, alias="DISCORD_BOT_TOKEN")
    discord_dm_policy: str | None = Field(default=None, alias="DISCORD_DM_POLICY")
    slack_bot_token: str | None = Field(default=None, alias="SLACK_BOT_TOKEN")
    slack_app_token: str | None = Field(default=None, alias="SLACK_APP_TOKEN")

    # Misc pass-through
    cdp_secret: str | None = Field(default=None, alias="CDP_SECRET")
    worker_url: str | None = Field(default=None, alias="WORKER_URL")

    @field_validator("*", mode="before")
    @classmethod
    def empty_as_unset(cls, value):
        if value == "":
            return None
        return value

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "SandboxSecrets":
        """Build from an environment mapping (defaults to os.environ)."""
        source = os.environ if environ is None else environ
        return cls.model_validate(dict(source))


# ============================================================================
# Backup Schemas
# ============================================================================

class BackupManifest(BaseModel):
    """A parsed .last-sync marker."""
    path: Path
    raw: str
    epoch: float = 0.0


class RestoreResult(BaseModel):
    """Outcome of a restore attempt."""
    restored_config: bool = False
    restored_skills: bool = False
    source: Path | None = None
    reason: str = ""


# ============================================================================
# Provider Schemas
# ============================================================================

class ProviderKind(str, Enum):
    """AI backend the gateway is configured for."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


class ProviderModel(BaseModel):
    """A model entry inside a provider block."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    context_window: int = Field(alias="contextWindow")


class ProviderSelection(BaseModel):
    """Provider block and primary model chosen for one launch."""
    kind: ProviderKind
    provider_key: str  # Key under models.providers (openai for Google-via-OpenAI)
    base_url: str | None = None
    api: str
    api_key: str | None = None
    models: list[ProviderModel]
    aliases: dict[str, str]  # Allowlist entry -> display name
    primary_model: str

    def provider_block(self) -> dict:
        """Render the block stored under models.providers."""
        block = {}
        if self.base_url:
            block["baseUrl"] = self.base_url
        block["api"] = self.api
        block["models"] = [m.model_dump(by_alias=True) for m in self.models]
        if self.api_key:
            block["apiKey"] = self.api_key
        return block
