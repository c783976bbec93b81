from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageKind(str, Enum):
    INITIALIZED = "initialized"
    LOGGING = "logging"
    DISCONNECTED = "disconnected"
    MESSAGE = "message"
    EXECUTE_SUCCESS = "executeSuccess"
    EXECUTE_FAILURE = "executeFailure"


# Control kinds that may also arrive wrapped inside a "message" envelope.
TRANSPARENT_KINDS = {MessageKind.INITIALIZED, MessageKind.LOGGING, MessageKind.DISCONNECTED}
CONTROL_KINDS = TRANSPARENT_KINDS | {MessageKind.EXECUTE_SUCCESS, MessageKind.EXECUTE_FAILURE}


@dataclass(frozen=True)
class Envelope:
    """One inbound message of the plugin channel, with at most one layer unwrapped."""

    kind: MessageKind
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, data: Any) -> "Envelope":
        if not isinstance(data, dict):
            return cls(MessageKind.MESSAGE, {"data": data})
        kind = data.get("type")
        if kind == MessageKind.MESSAGE.value:
            inner = data.get("data")
            if not isinstance(inner, dict):
                inner = {"data": inner}
            inner_kind = inner.get("type")
            if inner_kind in {k.value for k in TRANSPARENT_KINDS}:
                return cls(MessageKind(inner_kind), inner)
            return cls(MessageKind.MESSAGE, inner)
        if kind in {k.value for k in CONTROL_KINDS}:
            return cls(MessageKind(kind), data)
        # Unknown kinds are application messages the worker did not wrap.
        return cls(MessageKind.MESSAGE, data)

    @staticmethod
    def wrap(data: Any) -> dict[str, Any]:
        return {"type": MessageKind.MESSAGE.value, "data": data}

    @property
    def request_id(self) -> Any:
        return self.payload.get("id")
