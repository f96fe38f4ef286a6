"""Service layer helpers (settings, secrets)."""

from .settings import Settings, SettingsStore

__all__ = ["Settings", "SettingsStore"]
