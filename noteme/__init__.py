"""Top-level package for noteme."""

from . import analyzer, cleaner, config, recordings, storage, sync, transcriber

__all__ = ["analyzer", "cleaner", "config", "recordings", "storage", "sync", "transcriber"]
