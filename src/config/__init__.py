from dotenv import load_dotenv

from .loader import get_bool_env, get_int_env, get_str_env
from .memory import MemorySettings, get_memory_settings

load_dotenv()

__all__ = [
    "MemorySettings",
    "get_bool_env",
    "get_int_env",
    "get_memory_settings",
    "get_str_env",
]
