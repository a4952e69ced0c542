import pytest

from src.config.loader import get_bool_env, get_int_env
from src.config.memory import MemorySettings
from src.llms import llm as llm_module


def test_settings_read_memory_env(monkeypatch):
    monkeypatch.setenv("MEMORY_DB_PATH", "")
    monkeypatch.setenv("MEMORY_BOT_USER_ID", " 999 ")
    monkeypatch.setenv("MEMORY_ITEM_TTL_HOURS", "6")
    monkeypatch.setenv("MEMORY_VERBATIM_ITEMS", "not-a-number")

    settings = MemorySettings.from_env()

    assert settings.storage_enabled is False
    assert settings.bot_user_id == "999"
    assert settings.item_ttl_hours == 6
    assert settings.verbatim_items == 30


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("FLAG", "Yes")
    monkeypatch.setenv("COUNT", " 12 ")

    assert get_bool_env("FLAG") is True
    assert get_bool_env("MISSING_FLAG", True) is True
    assert get_int_env("COUNT") == 12


def test_llm_factory_requires_credentials(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr(llm_module, "_llm_cache", {})

    with pytest.raises(ValueError):
        llm_module.get_llm_by_type("summary")


def test_llm_factory_prefers_openrouter(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "or-key")
    monkeypatch.setenv("OPENAI_API_KEY", "oa-key")
    monkeypatch.delenv("LLM_BASE_URL", raising=False)
    monkeypatch.setenv("BASIC_MODEL", "test/model")
    monkeypatch.setattr(llm_module, "_llm_cache", {})

    llm = llm_module.get_llm_by_type("basic")

    assert llm.model_name == "test/model"
    assert llm.openai_api_base == "https://openrouter.ai/api/v1"
    assert llm_module.get_llm_by_type("basic") is llm
    assert llm_module.describe_llm(llm) == ("openai-chat", "test/model")
