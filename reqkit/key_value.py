"""Ordered, toggleable name/value pairs used for headers, params and forms."""

from __future__ import annotations

from pydantic import BaseModel


class KeyValue(BaseModel):
    enabled: bool = True
    data: tuple[str, str]

    @classmethod
    def of(cls, name: str, value: str, enabled: bool = True) -> KeyValue:
        return cls(enabled=enabled, data=(name, value))

    @property
    def name(self) -> str:
        return self.data[0]

    @property
    def value(self) -> str:
        return self.data[1]


def enabled_pairs(items: list[KeyValue]) -> list[tuple[str, str]]:
    """Return (name, value) for enabled entries, keeping their order."""
    return [item.data for item in items if item.enabled]
