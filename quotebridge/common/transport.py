from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

# Continuation for a request; receives the raw JSON reply body.
ResultCallback = Callable[[str], Awaitable[None]]
# Unsolicited session notifications (disconnects, server notices).
SessionEventCallback = Callable[[Dict[str, Any]], None]


class Transport(ABC):
    """Session with the publish/subscribe endpoint."""

    def __init__(self, on_event: Optional[SessionEventCallback] = None):
        self.on_event = on_event

    def emit_event(self, event: Dict[str, Any]):
        if self.on_event is not None:
            self.on_event(event)

    @abstractmethod
    async def connect(self):
        ...

    @abstractmethod
    async def login(self, user: str, password: str, on_result: ResultCallback):
        ...

    @abstractmethod
    async def logout(self):
        ...

    @abstractmethod
    async def request_publish_permission(self, dataset_id: str, on_result: ResultCallback):
        ...

    @abstractmethod
    async def send(self, dataset_id: str, document: str):
        ...

    @abstractmethod
    async def close(self):
        ...
