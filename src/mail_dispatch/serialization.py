"""EnvelopeSerializer: UTF-8 JSON roundtrip for TaskEnvelope."""

from __future__ import annotations

import json
from typing import Any

from .envelope import TaskEnvelope
from .exceptions import DeserializationError, SerializationError


def _json_serializer(obj: Any) -> Any:
    """Serialize datetime and other non-JSON types."""
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EnvelopeSerializer:
    """Serialize/deserialize TaskEnvelope to/from JSON bytes.

    The wire document carries exactly the envelope fields. Unknown keys are
    ignored on receipt; a missing ``recipient`` is a deserialization failure.
    """

    def serialize(self, envelope: TaskEnvelope) -> bytes:
        """Encode envelope to JSON bytes."""
        try:
            data = envelope.model_dump(mode="json")
            return json.dumps(data, default=_json_serializer).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(str(e)) from e

    def deserialize(self, raw: bytes) -> TaskEnvelope:
        """Decode JSON bytes to TaskEnvelope."""
        try:
            data = json.loads(raw.decode("utf-8"))
            if not isinstance(data, dict):
                raise TypeError(
                    f"Expected a JSON object, got {type(data).__name__}"
                )
            return TaskEnvelope.model_validate(data)
        except (TypeError, ValueError, RecursionError) as e:
            # json.JSONDecodeError, UnicodeDecodeError and pydantic's
            # ValidationError are all ValueError subclasses. Deeply nested
            # documents exhaust the decoder's recursion limit.
            raise DeserializationError(str(e)) from e
