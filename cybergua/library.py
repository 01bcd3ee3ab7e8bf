"""
Universe model library: named models with one of them active.

A ModelLibrary is an immutable value; every edit returns a new library. The
library never becomes empty and its active id always names one of its items.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from cybergua.config import ConfigError
from cybergua.model import UniverseModel, build_model, init_model

logger = logging.getLogger(__name__)

LIBRARY_SCHEMA_VERSION = 1
MAX_ITEMS = 60
DEFAULT_NAME = "默认模型"


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_item_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class LibraryItem:
    id: str
    name: str
    model: UniverseModel
    created_at: int
    updated_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "model": self.model.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class ModelLibrary:
    active_id: str
    items: Tuple[LibraryItem, ...]

    @property
    def active(self) -> LibraryItem:
        return next(x for x in self.items if x.id == self.active_id)

    def get(self, item_id: str) -> Optional[LibraryItem]:
        return next((x for x in self.items if x.id == item_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": LIBRARY_SCHEMA_VERSION,
            "activeId": self.active_id,
            "items": [x.to_dict() for x in self.items],
        }


def make_item(model: UniverseModel, name: str, now_ms: Optional[int] = None,
              item_id: Optional[str] = None) -> LibraryItem:
    now = _now_ms() if now_ms is None else now_ms
    return LibraryItem(id=item_id or new_item_id(), name=name, model=model, created_at=now, updated_at=now)


def ensure_library(library: Optional[ModelLibrary] = None, model: Optional[UniverseModel] = None,
                   now_ms: Optional[int] = None) -> ModelLibrary:
    """Return `library` if it holds anything, else a fresh one holding `model` (or a new model)."""
    if library is not None and library.items:
        return library
    item = make_item(model or init_model(now_ms=now_ms), DEFAULT_NAME, now_ms)
    return ModelLibrary(active_id=item.id, items=(item,))


def add_item(library: ModelLibrary, item: LibraryItem, make_active: bool) -> ModelLibrary:
    """Newest first, capped at MAX_ITEMS; the oldest items fall off."""
    items = ((item,) + library.items)[:MAX_ITEMS]
    active_id = item.id if make_active else library.active_id
    if all(x.id != active_id for x in items):
        active_id = items[0].id
    return ModelLibrary(active_id=active_id, items=items)


def update_active(library: ModelLibrary, model: UniverseModel, now_ms: Optional[int] = None) -> ModelLibrary:
    now = _now_ms() if now_ms is None else now_ms
    items = tuple(replace(x, model=model, updated_at=now) if x.id == library.active_id else x
                  for x in library.items)
    return replace(library, items=items)


def set_active(library: ModelLibrary, item_id: str) -> ModelLibrary:
    if library.get(item_id) is None:
        return library
    return replace(library, active_id=item_id)


def rename_item(library: ModelLibrary, item_id: str, name: str, now_ms: Optional[int] = None) -> ModelLibrary:
    """Blank names are ignored."""
    name = name.strip()
    if not name:
        return library
    now = _now_ms() if now_ms is None else now_ms
    items = tuple(replace(x, name=name, updated_at=now) if x.id == item_id else x for x in library.items)
    return replace(library, items=items)


def delete_item(library: ModelLibrary, item_id: str) -> ModelLibrary:
    """The last remaining item is never deleted; deleting the active item activates the next one."""
    if len(library.items) <= 1:
        return library
    items = tuple(x for x in library.items if x.id != item_id)
    if len(items) == len(library.items):
        return library
    active_id = items[0].id if library.active_id == item_id else library.active_id
    logger.info("model library delete id=%s active=%s", item_id, active_id)
    return ModelLibrary(active_id=active_id, items=items)


def _timestamp(v: Any, default: int) -> int:
    if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
        return default
    return int(v)


def build_library(cfg: Mapping[str, Any], now_ms: Optional[int] = None) -> ModelLibrary:
    """
    Rebuild an exported library. Entries without a string id and name, or
    without a model object, are dropped; a malformed model raises ConfigError.
    """
    if not isinstance(cfg, Mapping) or cfg.get("v") != LIBRARY_SCHEMA_VERSION:
        raise ConfigError(f"Not a version {LIBRARY_SCHEMA_VERSION} model library")
    raw_items = cfg.get("items")
    if not isinstance(raw_items, list):
        raise ConfigError("Model library items must be a list")

    now = _now_ms() if now_ms is None else now_ms
    items = []
    for raw in raw_items:
        if not isinstance(raw, Mapping):
            continue
        if not isinstance(raw.get("id"), str) or not isinstance(raw.get("name"), str):
            continue
        if not isinstance(raw.get("model"), Mapping):
            continue
        created = raw.get("createdAt")
        updated = raw.get("updatedAt")
        items.append(LibraryItem(
            id=raw["id"],
            name=raw["name"],
            model=build_model(raw["model"]),
            created_at=_timestamp(created, now),
            updated_at=_timestamp(updated, now),
        ))
    if not items:
        raise ConfigError("Model library holds no usable models")
    items = items[:MAX_ITEMS]

    active_id = cfg.get("activeId")
    if all(x.id != active_id for x in items):
        active_id = items[0].id
    return ModelLibrary(active_id=active_id, items=tuple(items))
