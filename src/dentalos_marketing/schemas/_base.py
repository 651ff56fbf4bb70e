from __future__ import annotations

from pydantic import BaseModel, ConfigDict


def _to_camel(value: str) -> str:
    parts = value.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


class CamelModel(BaseModel):
    """Accept both camelCase payloads from the web apps and snake_case from Python callers."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)
