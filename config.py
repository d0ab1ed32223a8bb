# config.py
import os
from dotenv import load_dotenv

load_dotenv()

DEFAULT_PI_API_BASE = "https://api.minepi.com/v2"
DEFAULT_DATA_ROOT   = "/var/data/droppay"


class ConfigError(RuntimeError):
    """A required server secret or setting is missing."""


def env(name: str, default: str = "") -> str:
    # read at call time so a rotated secret is picked up without a restart
    return (os.getenv(name) or default).strip()


def require(name: str, hint: str | None = None) -> str:
    val = env(name)
    if not val:
        raise ConfigError(hint or f"{name} not configured in server secrets")
    return val


def pi_api_key() -> str:
    return require("PI_API_KEY")


def pi_api_base() -> str:
    return env("PI_API_BASE", DEFAULT_PI_API_BASE).rstrip("/")


def pi_api_timeout() -> float:
    try:
        return float(env("PI_API_TIMEOUT", "20"))
    except ValueError:
        return 20.0


def store_backend() -> str:
    return env("STORE_BACKEND", "supabase").lower()


def supabase_credentials() -> tuple[str, str]:
    url = env("SUPABASE_URL")
    key = env("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise ConfigError(
            "Missing Supabase configuration. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY secrets."
        )
    return url, key


def sqlite_path() -> str:
    data_root = env("DATA_ROOT", DEFAULT_DATA_ROOT)
    return env("SQLITE_DB_PATH", os.path.join(data_root, "droppay.sqlite"))


def allow_origin() -> str:
    return env("ALLOW_ORIGIN", "*")
