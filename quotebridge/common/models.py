import json
from decimal import Decimal
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict

# written by QuoteDocument itself, never by a field mapping
RESERVED_FIELD_NAMES = ("dataset", "typeId", "timestamp")


class RawTick(BaseModel):
    model_config = ConfigDict(frozen=True)

    received_at: int  # wall clock, epoch ms
    source_key: str
    payload: str


class Subscription(BaseModel):
    source_key: str
    dataset_id: str


class FieldMapping(BaseModel):
    field_name: str
    column_index: int


def number_text(value: Any) -> str:
    # plain notation, never exponent form
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, bool):
        raise TypeError("bool is not a quote field value")
    if isinstance(value, int):
        return str(value)
    raise TypeError(f"Unsupported quote field value: {value!r}")


class QuoteDocument(BaseModel):
    dataset: str
    type_id: str
    timestamp: int  # epoch ms, UTC
    # insertion order is the wire order; values are Decimal or int
    fields: Dict[str, Any]

    def to_json(self) -> str:
        parts = [
            f'"dataset": {json.dumps(self.dataset)}',
            f'"typeId": {json.dumps(self.type_id)}',
            f'"timestamp": {self.timestamp}',
        ]
        for name, value in self.fields.items():
            parts.append(f"{json.dumps(name)}: {number_text(value)}")
        return "{ " + ", ".join(parts) + " }"
