"""Shared configuration for record schemas."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Record(BaseModel):
    """Base record: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        """Return the camelCase document shape, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
