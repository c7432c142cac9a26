"""Context cache: content-addressed task outcomes."""

from .context_cache import ContextCache, compute_fingerprint
from .store import ContextStore, FileContextStore, MemoryContextStore

__all__ = ["ContextCache", "compute_fingerprint", "ContextStore", "FileContextStore", "MemoryContextStore"]
