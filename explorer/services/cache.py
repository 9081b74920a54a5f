from __future__ import annotations

from typing import Dict, Tuple

CacheKey = Tuple[str, str]


class MatrixSetCache:
    """Session-lifetime memo of the tile matrix set discovered per WMTS layer.

    Entries are keyed by ``(base_url, layer_id)``. The first stored value wins:
    capability documents rarely change within a session, so later writes for
    the same key are ignored. Nothing is persisted across process restarts.
    """

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, str] = {}

    def load(self, base_url: str, layer_id: str) -> str | None:
        """Return the cached matrix set name for the layer, if discovered."""

        return self._entries.get(self._key(base_url, layer_id))

    def store(self, base_url: str, layer_id: str, matrix_set: str) -> str:
        """Remember ``matrix_set`` for the layer and return the effective value."""

        key = self._key(base_url, layer_id)
        return self._entries.setdefault(key, matrix_set)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _key(base_url: str, layer_id: str) -> CacheKey:
        return base_url.rstrip("/"), layer_id
