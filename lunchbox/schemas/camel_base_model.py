from datetime import datetime, date
from enum import Enum
from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel


class CamelCaseBaseModel(BaseModel):
    """
    Base model for everything crossing the HTTP boundary.

    Clients send and receive camelCase keys (``userId``, ``dueDate``); Python
    code works with the snake_case attribute names. Either form is accepted
    on input. Dump with ``by_alias=True`` to get camelCase back out.
    Datetimes, dates and enums are serialized to JSON-friendly primitives.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_serializer("*")
    def serialize_any(self, value):
        if isinstance(value, Enum):
            return value.value

        # datetime is a subclass of date
        if isinstance(value, (datetime, date)):
            return value.isoformat()

        if isinstance(value, (list, tuple, set)):
            return [self.serialize_any(item) for item in value]

        if isinstance(value, dict):
            return {key: self.serialize_any(val) for key, val in value.items()}

        if isinstance(value, BaseModel):
            return value.model_dump(by_alias=True)

        return value
