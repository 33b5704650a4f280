import os
from typing import Mapping, Optional

from pydantic import BaseModel

from quotebridge.common.redis_streams import DEFAULT_REDIS_URL, DEFAULT_STREAM_PREFIX

TRANSPORTS = ("websocket", "redis")


# ----------------------------
# Env helpers
# ----------------------------
def getenv_required(name: str, env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    v = env.get(name)
    if not v:
        raise RuntimeError(f"Missing required env var: {name}")
    return v


def getenv_int(name: str, default: str, env: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if env is None else env
    raw = env.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Env var {name} must be an integer, got {raw!r}")


def getenv_required_int(name: str, env: Optional[Mapping[str, str]] = None) -> int:
    return getenv_int(name, getenv_required(name, env), env)


def getenv_float(name: str, default: str, env: Optional[Mapping[str, str]] = None) -> float:
    env = os.environ if env is None else env
    raw = env.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Env var {name} must be a number, got {raw!r}")


def getenv_bool(name: str, default: str, env: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if env is None else env
    return env.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# ----------------------------
# Settings
# ----------------------------
class EndpointSettings(BaseModel):
    host: str
    vpn: str
    user: str
    password: str
    type_id: str
    subscription_mapping: str
    transport: str = "websocket"
    redis_url: str = DEFAULT_REDIS_URL
    stream_prefix: str = DEFAULT_STREAM_PREFIX
    await_poll_seconds: float = 10.0
    metrics_port: int = 0


class LiveSettings(EndpointSettings):
    feed_url: str = "ws://localhost:8765"
    feed_channel: str = "MT4"
    feed_topic: str = "QUOTE"
    feed_enabled: bool = True
    dst_offset_seconds: int = 0
    standard_offset_seconds: int = 0
    dst_region_tz: str = "America/New_York"
    queue_poll_seconds: float = 10.0


class CsvSettings(EndpointSettings):
    data_file: str
    dataset_column: int
    timestamp_column: int
    timestamp_format: str
    source_timezone: str = "America/New_York"
    field_mapping: str


def _endpoint_kwargs(env: Mapping[str, str]) -> dict:
    transport = env.get("TRANSPORT", "websocket").strip().lower()
    if transport not in TRANSPORTS:
        raise RuntimeError(f"TRANSPORT must be one of {TRANSPORTS}, got {transport!r}")
    return dict(
        host=getenv_required("ENDPOINT_HOST", env),
        vpn=getenv_required("ENDPOINT_VPN", env),
        user=getenv_required("ENDPOINT_USER", env),
        password=getenv_required("ENDPOINT_PASSWORD", env),
        type_id=getenv_required("QUOTE_TYPE_ID", env),
        subscription_mapping=getenv_required("SUBSCRIPTION_MAPPING", env),
        transport=transport,
        redis_url=env.get("REDIS_URL", DEFAULT_REDIS_URL),
        stream_prefix=env.get("STREAM_PREFIX", DEFAULT_STREAM_PREFIX),
        await_poll_seconds=getenv_float("AWAIT_POLL_SECONDS", "10", env),
        metrics_port=getenv_int("METRICS_PORT", "0", env),
    )


def load_live_settings(env: Optional[Mapping[str, str]] = None) -> LiveSettings:
    env = os.environ if env is None else env
    return LiveSettings(
        **_endpoint_kwargs(env),
        feed_url=env.get("FEED_URL", "ws://localhost:8765"),
        feed_channel=env.get("FEED_CHANNEL", "MT4"),
        feed_topic=env.get("FEED_TOPIC", "QUOTE"),
        feed_enabled=getenv_bool("FEED_ENABLED", "true", env),
        dst_offset_seconds=getenv_int("DST_OFFSET_SECONDS", "0", env),
        standard_offset_seconds=getenv_int("STANDARD_OFFSET_SECONDS", "0", env),
        dst_region_tz=env.get("DST_REGION_TZ", "America/New_York"),
        queue_poll_seconds=getenv_float("QUEUE_POLL_SECONDS", "10", env),
    )


def load_csv_settings(env: Optional[Mapping[str, str]] = None) -> CsvSettings:
    env = os.environ if env is None else env
    return CsvSettings(
        **_endpoint_kwargs(env),
        data_file=getenv_required("DATA_FILE", env),
        dataset_column=getenv_required_int("DATASET_COLUMN", env),
        timestamp_column=getenv_required_int("TIMESTAMP_COLUMN", env),
        timestamp_format=getenv_required("TIMESTAMP_FORMAT", env),
        source_timezone=env.get("SOURCE_TIMEZONE", "America/New_York"),
        field_mapping=getenv_required("FIELD_MAPPING", env),
    )
