# config.py
import os
from dataclasses import dataclass, fields

DEFAULT_DB_PATH = "queue.db"


@dataclass
class Settings:
    db_path: str = DEFAULT_DB_PATH
    job_timeout_secs: float = 60.0     # ceiling for the execution phase only, delays are unbounded
    poll_interval: float = 1.0
    aging_interval: float = 1.0
    resume_interval: float = 2.0
    promotion_interval: float = 1.0
    slice_ms: int = 100
    checkpoint_ms: int = 500
    backoff_base: int = 2
    default_max_retries: int = 3


# keys that may be stored in the config table (db_path has to be known before the db is opened)
CONFIG_KEYS = tuple(f.name for f in fields(Settings) if f.name != "db_path")


def db_path_from_env():
    return os.environ.get("PCBQUEUE_DB", DEFAULT_DB_PATH)


def _from_env():
    values = {"db_path": db_path_from_env()}
    if os.environ.get("JOB_TIMEOUT_MS"):
        values["job_timeout_secs"] = int(os.environ["JOB_TIMEOUT_MS"]) / 1000
    return values


def load_settings(storage=None, **overrides) -> Settings:
    """Resolve settings: explicit override > config table > environment > default."""
    resolved = _from_env()
    if storage is not None:
        resolved["db_path"] = storage.db_path
        for key in CONFIG_KEYS:
            value = storage.get_config(key)
            if value is not None:
                resolved[key] = value
    resolved.update({k: v for k, v in overrides.items() if v is not None})

    types = {f.name: f.type for f in fields(Settings)}
    kwargs = {}
    for key, value in resolved.items():
        if key not in types:
            raise KeyError(f"unknown setting: {key}")
        kwargs[key] = _coerce(types[key], value, key)
    return Settings(**kwargs)


def _coerce(type_, value, key):
    caster = {"float": float, "int": int, "str": str}.get(getattr(type_, "__name__", type_), str)
    try:
        return caster(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid value for {key}: {value!r}") from e
