import os
from typing import Mapping, Optional


# Host variables handed to the gateway under the same name when set.
PASSTHROUGH_KEYS: list[str] = [
    "OPENCLAW_BIND_MODE",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_DM_POLICY",
    "TELEGRAM_DM_ALLOW_FROM",
    "DISCORD_BOT_TOKEN",
    "DISCORD_DM_POLICY",
    "DISCORD_ALLOWED_USERS",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "CDP_SECRET",
    "WORKER_URL",
    "GOOGLE_PLACES_API_KEY",
    "AUTH_TOKEN",
    "CT0",
    "GH_TOKEN",
    "NIA_API_KEY",
    "IMGBB_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "GOOGLE_CLOUD_PROJECT",
    "GOOGLE_CLOUD_LOCATION",
    "GOOGLE_GENAI_USE_VERTEXAI",
    "OBSIDIAN_API_URL",
    "OBSIDIAN_API_KEY",
    "BW_EMAIL",
    "BW_PASSWORD",
    "OPENROUTER_API_KEY",
]

# Host name -> name inside the gateway process.
RENAMED_KEYS: dict[str, str] = {
    "CLAWBOX_GATEWAY_TOKEN": "OPENCLAW_GATEWAY_TOKEN",
    "CLAWBOX_DEV_MODE": "OPENCLAW_DEV_MODE",
}


def _get(source: Mapping[str, str], key: str) -> Optional[str]:
    value = source.get(key)
    if value is None or value == "":
        return None
    return str(value)


def build_env_vars(source: Mapping[str, str]) -> dict[str, str]:
    env: dict[str, str] = {}

    base_url = _get(source, "AI_GATEWAY_BASE_URL")
    normalized_base_url = base_url.rstrip("/") if base_url else None
    is_openai_gateway = bool(normalized_base_url and normalized_base_url.endswith("/openai"))

    for key in ("ANTHROPIC_API_KEY", "ANTHROPIC_OAUTH_TOKEN", "OPENAI_API_KEY"):
        value = _get(source, key)
        if value:
            env[key] = value

    # The AI gateway key stands in for the provider key unless one was given directly.
    gateway_key = _get(source, "AI_GATEWAY_API_KEY")
    if gateway_key:
        if is_openai_gateway and "OPENAI_API_KEY" not in env:
            env["OPENAI_API_KEY"] = gateway_key
        elif "ANTHROPIC_API_KEY" not in env and "ANTHROPIC_OAUTH_TOKEN" not in env:
            env["ANTHROPIC_API_KEY"] = gateway_key
        else:
            env["AI_GATEWAY_API_KEY"] = gateway_key

    if normalized_base_url:
        env["AI_GATEWAY_BASE_URL"] = normalized_base_url
        if is_openai_gateway:
            env["OPENAI_BASE_URL"] = normalized_base_url
        else:
            env["ANTHROPIC_BASE_URL"] = normalized_base_url
    else:
        anthropic_base_url = _get(source, "ANTHROPIC_BASE_URL")
        if anthropic_base_url:
            env["ANTHROPIC_BASE_URL"] = anthropic_base_url

    for host_key, gateway_key_name in RENAMED_KEYS.items():
        value = _get(source, host_key)
        if value:
            env[gateway_key_name] = value

    for key in PASSTHROUGH_KEYS:
        value = _get(source, key)
        if value:
            env[key] = value

    return env


def desired_env() -> dict[str, str]:
    return build_env_vars(os.environ)
