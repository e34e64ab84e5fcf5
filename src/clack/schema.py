"""Tagged input-schema types for tool arguments.

A tool's input contract is an `ObjectSchema` whose properties are one of three
field variants. The same objects drive argument validation and render the
JSON-Schema shape advertised by `tools/list`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

_JSON = dict[str, Any]


@dataclass(frozen=True)
class NumberField:
    description: str = ""
    minimum: float | None = None
    maximum: float | None = None
    integer: bool = True

    type_name = "number"

    def to_json(self) -> _JSON:
        out: _JSON = {"type": self.type_name, "description": self.description}
        if self.minimum is not None:
            out["minimum"] = self.minimum
        if self.maximum is not None:
            out["maximum"] = self.maximum
        return out


@dataclass(frozen=True)
class StringField:
    description: str = ""
    min_length: int | None = None
    max_length: int | None = None
    format: str | None = None

    type_name = "string"

    def to_json(self) -> _JSON:
        out: _JSON = {"type": self.type_name, "description": self.description}
        if self.min_length is not None:
            out["minLength"] = self.min_length
        if self.max_length is not None:
            out["maxLength"] = self.max_length
        if self.format is not None:
            out["format"] = self.format
        return out


@dataclass(frozen=True)
class BooleanField:
    description: str = ""

    type_name = "boolean"

    def to_json(self) -> _JSON:
        return {"type": self.type_name, "description": self.description}


FieldSchema = Union[NumberField, StringField, BooleanField]


@dataclass(frozen=True)
class OrderedPair:
    """Cross-field rule: `upper` must not be less than `lower`."""

    lower: str
    upper: str


@dataclass(frozen=True)
class ObjectSchema:
    properties: dict[str, FieldSchema] = field(default_factory=dict)
    required: tuple[str, ...] = ()
    ordered: tuple[OrderedPair, ...] = ()

    def to_json(self) -> _JSON:
        return {
            "type": "object",
            "properties": {name: declared.to_json() for name, declared in self.properties.items()},
            "required": list(self.required),
        }


# Shared field definitions -----------------------------------------------------


def id_field(description: str) -> NumberField:
    return NumberField(description=description, minimum=1)


START_INDEX = NumberField(description="Start index (inclusive, 0-based)", minimum=0)
END_INDEX = NumberField(description="End index (exclusive)", minimum=1)
START_TIME = StringField(description="Start time (ISO 8601)", format="date-time")
END_TIME = StringField(description="End time (ISO 8601)", format="date-time")
MESSAGE_CONTENT = StringField(description="Message content", min_length=1, max_length=1000)
CLIENT_MESSAGE_ID = StringField(
    description="Client-generated id echoed back for de-duplication",
    min_length=1,
    max_length=64,
)
LATEST_FIRST = BooleanField(description="Page from the newest message backwards")

INDEX_RANGE = OrderedPair("startIndex", "endIndex")
TIME_RANGE = OrderedPair("startTime", "endTime")
