from typing import Optional

from quotebridge.common.config import EndpointSettings
from quotebridge.common.redis_streams import RedisStreamTransport
from quotebridge.common.session_ws import WebSocketSessionClient
from quotebridge.common.transport import SessionEventCallback, Transport


def make_transport(settings: EndpointSettings, on_event: Optional[SessionEventCallback] = None) -> Transport:
    if settings.transport == "redis":
        return RedisStreamTransport(settings.redis_url, settings.stream_prefix, on_event=on_event)
    if settings.transport == "websocket":
        return WebSocketSessionClient(settings.host, settings.vpn, on_event=on_event)
    raise ValueError(f"Unknown transport: {settings.transport}")
