"""Local state persistence for depot_mirror."""

from depot_mirror.database.kv_store import KeyValueStore
from depot_mirror.database.title_state import TitleStateStore

__all__ = ["KeyValueStore", "TitleStateStore"]
