"""Service layer helpers (settings persistence)."""

from .settings import Settings, SettingsStore, TaskSettings, apply_overrides, redact_secret

__all__ = [
    "Settings",
    "SettingsStore",
    "TaskSettings",
    "apply_overrides",
    "redact_secret",
]
