"""Cached plugin catalog reported by the native peer's ``vst:scan``."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from .client import PeerLink
from .protocol import Command

logger = logging.getLogger(__name__)


class PluginDescriptor(BaseModel):
    """One scanned plugin; ``kind`` is derived from the peer's loose flags."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    uid: str = Field(..., min_length=1, validation_alias=AliasChoices("uid", "plugin_uid", "id"))
    name: str = ""
    vendor: Optional[str] = Field(None, validation_alias=AliasChoices("vendor", "manufacturer"))
    format: Optional[str] = None
    kind: Literal["instrument", "effect"] = "effect"

    @model_validator(mode="before")
    @classmethod
    def derive_kind(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "kind" in data:
            return data
        flag = data.get("is_instrument", data.get("isInstrument"))
        category = str(data.get("category") or data.get("type") or "").lower()
        is_instrument = bool(flag) if flag is not None else "instrument" in category
        return {**data, "kind": "instrument" if is_instrument else "effect"}

    @model_validator(mode="after")
    def default_name(self) -> PluginDescriptor:
        if not self.name:
            self.name = self.uid
        return self


class PluginCatalog:
    """Scan results cached until the connection changes."""

    def __init__(self, link: PeerLink) -> None:
        self._link = link
        self._entries: Optional[Dict[str, PluginDescriptor]] = None

    @property
    def cached(self) -> bool:
        return self._entries is not None

    def invalidate(self) -> None:
        self._entries = None

    async def plugins(self, *, refresh: bool = False) -> List[PluginDescriptor]:
        if self._entries is None or refresh:
            payload = await self._link.request(Command.VST_SCAN, {})
            entries: Dict[str, PluginDescriptor] = {}
            for raw in payload.get("plugins") or []:
                try:
                    descriptor = PluginDescriptor.model_validate(raw)
                except ValidationError as exc:
                    logger.debug("Skipping malformed catalog entry %r: %s", raw, exc)
                    continue
                entries.setdefault(descriptor.uid, descriptor)
            self._entries = entries
            logger.info("Plugin catalog holds %d plugin(s)", len(entries))
        return list(self._entries.values())

    async def lookup(self, uid: str) -> Optional[PluginDescriptor]:
        for descriptor in await self.plugins():
            if descriptor.uid == uid:
                return descriptor
        return None


__all__ = ["PluginCatalog", "PluginDescriptor"]
