"""Storage helpers for imported entities."""

from .upsert import find_by_keys, get_by_gomafia_id, id_map, upsert

__all__ = ["find_by_keys", "get_by_gomafia_id", "id_map", "upsert"]
