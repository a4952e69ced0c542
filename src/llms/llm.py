import logging
from typing import Literal

from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI

from src.config.loader import get_int_env, get_str_env

logger = logging.getLogger(__name__)

LLMType = Literal["basic", "summary"]

_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
_DEFAULT_MODELS: dict[str, str] = {
    "basic": "google/gemini-2.5-flash-lite",
    "summary": "google/gemini-2.5-flash-lite",
}
_MAX_TOKENS: dict[str, int] = {"basic": 800, "summary": 500}

_llm_cache: dict[str, BaseChatModel] = {}


def _resolve_credentials() -> tuple[str, str | None]:
    """Return (api_key, base_url), preferring OpenRouter over OpenAI."""
    base_url = get_str_env("LLM_BASE_URL", "") or None
    openrouter_key = get_str_env("OPENROUTER_API_KEY", "")
    if openrouter_key:
        return openrouter_key, base_url or _OPENROUTER_BASE_URL
    openai_key = get_str_env("OPENAI_API_KEY", "")
    if openai_key:
        return openai_key, base_url
    raise ValueError("No language model provider configured (set OPENROUTER_API_KEY or OPENAI_API_KEY)")


def get_llm_by_type(llm_type: LLMType) -> BaseChatModel:
    """Get a cached chat model for the given usage type.

    Raises ``ValueError`` when no provider credentials are configured.
    """
    if llm_type in _llm_cache:
        return _llm_cache[llm_type]

    api_key, base_url = _resolve_credentials()
    model = get_str_env(f"{llm_type.upper()}_MODEL", _DEFAULT_MODELS[llm_type])
    llm = ChatOpenAI(
        model=model,
        api_key=api_key,
        base_url=base_url,
        max_tokens=get_int_env(f"{llm_type.upper()}_MAX_TOKENS", _MAX_TOKENS[llm_type]),
        timeout=get_int_env("LLM_TIMEOUT_SECONDS", 60),
        max_retries=1,
    )
    logger.info("Initialised %s LLM %s (base_url=%s)", llm_type, model, base_url or "default")
    _llm_cache[llm_type] = llm
    return llm


def describe_llm(llm: BaseChatModel) -> tuple[str | None, str | None]:
    """Best-effort (provider, model) labels for run bookkeeping."""
    provider = getattr(llm, "_llm_type", None)
    model = getattr(llm, "model_name", None) or getattr(llm, "model", None)
    return provider, str(model) if model else None
