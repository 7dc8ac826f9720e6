"""Reference collaborator implementations."""

from .memory import (
    HttpStatusError,
    InMemoryEntityStore,
    InMemoryPreferenceStore,
    RecordingNotifier,
)

__all__ = [
    "HttpStatusError",
    "InMemoryEntityStore",
    "InMemoryPreferenceStore",
    "RecordingNotifier",
]
