import logging
from typing import Dict, List, Optional, Tuple

from quotebridge.common.models import RESERVED_FIELD_NAMES, FieldMapping, Subscription

log = logging.getLogger("quotebridge.symbol_map")


def parse_pairs(text: str) -> List[Tuple[str, str]]:
    """
    Flat "key,value,key,value" list -> [(key, value), ...].
    A trailing key without a value is ignored.
    """
    tokens = [t.strip() for t in (text or "").split(",") if t.strip()]
    return [(tokens[i], tokens[i + 1]) for i in range(0, len(tokens) - 1, 2)]


class SubscriptionRegistry:
    """
    source key -> dataset id, plus (CSV mode) output field -> column index.
    Written at configuration time only; frozen once the handshake starts.
    """
    def __init__(self):
        self._subs: Dict[str, str] = {}
        self._fields: List[FieldMapping] = []
        self._frozen = False

    def _check_open(self):
        if self._frozen:
            raise RuntimeError("Subscription registry is frozen after start")

    def register(self, source_key: str, dataset_id: str):
        self._check_open()
        self._subs[source_key] = dataset_id

    def map_field(self, field_name: str, column_index: int):
        self._check_open()
        if field_name in RESERVED_FIELD_NAMES:
            raise ValueError(f"Field name {field_name!r} is reserved")
        self._fields = [f for f in self._fields if f.field_name != field_name]
        self._fields.append(FieldMapping(field_name=field_name, column_index=column_index))

    def freeze(self):
        self._frozen = True

    def resolve(self, source_key: str) -> Optional[str]:
        return self._subs.get(source_key)

    def datasets(self) -> List[str]:
        return list(dict.fromkeys(self._subs.values()))

    def keys_for(self, dataset_id: str) -> List[str]:
        return [k for k, ds in self._subs.items() if ds == dataset_id]

    def subscriptions(self) -> List[Subscription]:
        return [Subscription(source_key=k, dataset_id=ds) for k, ds in self._subs.items()]

    def field_mappings(self) -> List[FieldMapping]:
        return list(self._fields)

    def __len__(self):
        return len(self._subs)


def load_registry(subscription_mapping: str, field_mapping: str = "") -> SubscriptionRegistry:
    registry = SubscriptionRegistry()
    for key, dataset_id in parse_pairs(subscription_mapping):
        registry.register(key, dataset_id)
    for name, column in parse_pairs(field_mapping):
        try:
            index = int(column)
        except ValueError:
            raise RuntimeError(f"Invalid column index for field {name}: {column!r}")
        try:
            registry.map_field(name, index)
        except ValueError as e:
            raise RuntimeError(f"Invalid FIELD_MAPPING: {e}")
    log.info("Loaded %d subscriptions -> %d datasets, %d field mappings",
             len(registry), len(registry.datasets()), len(registry.field_mappings()))
    return registry
