"""
Secure Ward - LLM Provider Factory

Single point of chat-model construction for the advisory layer.
The advisory provider imports `create_llm` from here and nowhere else.

Configuration (in priority order):
  1. Explicit `provider` argument to create_llm()
  2. LLM_PROVIDER environment variable
  3. advisory.provider in the ward config
  4. Auto-detect from available API key env vars

Supported providers:
  cohere  - Cohere (langchain-cohere)
  openai  - OpenAI direct (langchain-openai)
  google  - Google Gemini (langchain-google-genai)

Design rules:
  - Returns langchain BaseChatModel; the advisory provider is provider-blind
  - No provider-specific imports at module level (lazy imports only)
"""

from __future__ import annotations

import os
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel

from clinic.config import get_config_value


PROVIDER_DEFAULT_MODELS = {
    "cohere": "command-r",
    "openai": "gpt-4o-mini",
    "google": "gemini-2.0-flash",
}


def detect_provider(config: dict[str, Any] | None = None) -> str:
    """
    Detect LLM provider. Priority:
      1. LLM_PROVIDER env var
      2. advisory.provider in config
      3. Auto-detect from API key env vars
    """
    explicit = os.environ.get("LLM_PROVIDER", "").lower().strip()
    if explicit:
        return explicit

    cfg_default = get_config_value("advisory.provider", config or {}, None)
    if cfg_default:
        return str(cfg_default).lower().strip()

    if os.environ.get("COHERE_API_KEY"):
        return "cohere"
    if os.environ.get("OPENAI_API_KEY"):
        return "openai"
    if os.environ.get("GOOGLE_API_KEY"):
        return "google"

    raise EnvironmentError(
        "No LLM provider detected. Set one of:\n"
        "  LLM_PROVIDER=cohere|openai|google\n"
        "  Or set advisory.provider in the ward config\n"
        "  Or set COHERE_API_KEY / OPENAI_API_KEY / GOOGLE_API_KEY"
    )


# ═══════════════════════════════════════════════════════════════════════
# Provider factories (lazy imports)
# ═══════════════════════════════════════════════════════════════════════

def _create_cohere(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_cohere import ChatCohere
    return ChatCohere(model=model, temperature=temperature, **kwargs)


def _create_openai(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, temperature=temperature, **kwargs)


def _create_google(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_google_genai import ChatGoogleGenerativeAI
    return ChatGoogleGenerativeAI(model=model, temperature=temperature, **kwargs)


_FACTORIES = {
    "cohere": _create_cohere,
    "openai": _create_openai,
    "google": _create_google,
}


def create_llm(
    model: str = "default",
    temperature: float | None = None,
    provider: str | None = None,
    config: dict[str, Any] | None = None,
    **kwargs,
) -> BaseChatModel:
    """
    Create a chat model for advisory calls.

    Args:
        model:       "default" (resolved from config, then the provider's
                     default) or a provider-specific model name.
        temperature: Sampling temperature; config advisory.temperature if None.
        provider:    Force a provider. If None, auto-detected.
        config:      Loaded ward config (see clinic.config.load_config).
    """
    config = config or {}
    provider = (provider or detect_provider(config)).lower().strip()
    if provider not in _FACTORIES:
        raise ValueError(
            f"Unknown provider '{provider}'. "
            f"Supported: {', '.join(_FACTORIES.keys())}"
        )

    if model == "default":
        model = (
            os.environ.get("LLM_DEFAULT_MODEL", "").strip()
            or get_config_value("advisory.model", config, None)
            or PROVIDER_DEFAULT_MODELS[provider]
        )
    if temperature is None:
        temperature = float(get_config_value("advisory.temperature", config, 0.7))

    return _FACTORIES[provider](model, temperature, **kwargs)
