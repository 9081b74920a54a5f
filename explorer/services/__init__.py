"""Service utilities exposed by the ``explorer.services`` package."""

from .catalog import LayerCatalog
from .fallback import FallbackOrchestrator, LoadState
from .resolver import TileSourceResolver

__all__ = ["LayerCatalog", "TileSourceResolver", "FallbackOrchestrator", "LoadState"]
