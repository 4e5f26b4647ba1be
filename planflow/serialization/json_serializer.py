import json
from datetime import datetime
from typing import Any

from planflow.serialization.base import BaseSerializer


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class JsonSerializer(BaseSerializer):
    def serialize_value(self, value: Any) -> str:
        # Results that are not JSON types are stored as their string form.
        return json.dumps(value, default=_default)

    def deserialize_value(self, data: str) -> Any:
        if data is None or data == "":
            return None
        return json.loads(data)
