from __future__ import annotations

from enum import Enum


class TokenEnum(str, Enum):
    """Lower-case string enum that also accepts the upper-case tokens other DentalOS services send."""

    @classmethod
    def _missing_(cls, value: object) -> "TokenEnum | None":
        if isinstance(value, str):
            token = value.strip().lower()
            for member in cls:
                if member.value == token:
                    return member
        return None


__all__ = ["TokenEnum"]
