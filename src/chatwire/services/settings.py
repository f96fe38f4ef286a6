"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..utils.file_io import write_text

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "FernetSecretProvider",
    "SecretProvider",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "is_secret_variable",
    "redact_secret",
    "redact_variables",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".chatwire"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATWIRE_SYSTEM_PROMPT": "system_prompt",
    "CHATWIRE_COMPLETION_PROVIDER": "selected_completion_provider",
    "CHATWIRE_TRANSCRIPTION_PROVIDER": "selected_transcription_provider",
    "CHATWIRE_CONVERSATIONS_DIR": "conversations_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATWIRE_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATWIRE_REQUEST_TIMEOUT": "request_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATWIRE_MAX_FILES": "max_files",
}
_VARIABLE_ENV_PREFIX = "CHATWIRE_VAR_"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_SECRET_MARKERS = ("KEY", "TOKEN", "SECRET", "PASSWORD")
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Be concise, accurate, and friendly in your responses"
)
ProviderKind = Literal["completion", "transcription"]


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions.

    ``variables`` holds placeholder values shared by every provider;
    ``provider_variables`` holds per-provider values that take precedence.
    """

    completion_providers: list[dict[str, Any]] = field(default_factory=list)
    transcription_providers: list[dict[str, Any]] = field(default_factory=list)
    selected_completion_provider: str | None = None
    selected_transcription_provider: str | None = None
    variables: dict[str, str] = field(default_factory=dict)
    provider_variables: dict[str, dict[str, str]] = field(default_factory=dict)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    request_timeout: float | None = None
    max_files: int = 6
    conversations_dir: str | None = None
    debug_logging: bool = False

    def provider_entries(self, kind: ProviderKind) -> list[dict[str, Any]]:
        if kind == "transcription":
            return list(self.transcription_providers)
        return list(self.completion_providers)

    def selected_provider(self, kind: ProviderKind) -> str | None:
        if kind == "transcription":
            return self.selected_transcription_provider
        return self.selected_completion_provider

    def variables_for(self, provider_id: str | None) -> dict[str, str]:
        merged = {name.upper(): value for name, value in self.variables.items()}
        for name, value in (self.provider_variables.get(provider_id or "") or {}).items():
            merged[name.upper()] = value
        return merged


class SecretProvider(ABC):
    """Interface for encrypting and decrypting sensitive strings."""

    name: str = "unknown"

    @abstractmethod
    def encrypt(self, secret: str) -> str:
        """Return an encoded representation of ``secret`` suitable for storage."""

    @abstractmethod
    def decrypt(self, token: str) -> str:
        """Return the plaintext representation of ``token``."""


class FernetSecretProvider(SecretProvider):
    """Secret provider that uses a symmetric Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return token.decode("ascii")

    def decrypt(self, token: str) -> str:
        raw = self._get_fernet().decrypt(token.encode("ascii"))
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            key = self._load_or_create_key()
            self._fernet = Fernet(key)
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SecretVault:
    """Encrypts and decrypts provider secrets for settings persistence.

    Tokens carry a ``<backend>:`` prefix so the backend can change later
    without breaking stored values.
    """

    def __init__(
        self,
        *,
        key_path: Path | None = None,
        provider: SecretProvider | None = None,
    ) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet_provider = FernetSecretProvider(self._key_path)
        self._provider = provider or self._fernet_provider

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        payload = self._provider.encrypt(secret)
        return f"{self._provider.name}:{payload}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, payload = self._split_token(token)
        provider = self._provider_for_prefix(prefix)
        if provider is None:
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix)
            return token
        try:
            return provider.decrypt(payload)
        except InvalidToken as exc:  # pragma: no cover - indicates tampering
            raise ValueError("Invalid Fernet token") from exc

    def is_token(self, value: str) -> bool:
        prefix, _ = self._split_token(value)
        return self._provider_for_prefix(prefix) is not None and prefix is not None

    def _provider_for_prefix(self, prefix: str | None) -> SecretProvider | None:
        if prefix == self._provider.name:
            return self._provider
        if prefix == FernetSecretProvider.name:
            return self._fernet_provider
        if prefix is None:
            return self._provider
        return None

    @staticmethod
    def _split_token(token: str) -> tuple[str | None, str]:
        if ":" not in token:
            return None, token
        prefix, payload = token.split(":", 1)
        return (prefix or None), payload


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        key_path = self._path.with_suffix(".key")
        self._vault = vault or SecretVault(key_path=key_path)

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def vault(self) -> SecretVault:
        """Return the secret vault managing provider secrets."""

        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            data = _filter_fields(payload)
            variables, migrated = self._decrypt_variables(data.get("variables"))
            data["variables"] = variables
            needs_migration = needs_migration or migrated
            per_provider: Dict[str, Dict[str, str]] = {}
            raw_per_provider = data.get("provider_variables")
            if isinstance(raw_per_provider, Mapping):
                for provider_id, values in raw_per_provider.items():
                    decrypted, migrated = self._decrypt_variables(values)
                    per_provider[str(provider_id)] = decrypted
                    needs_migration = needs_migration or migrated
            data["provider_variables"] = per_provider
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug(
                "Settings loaded from %s: %d completion / %d transcription providers",
                self._path,
                len(settings.completion_providers),
                len(settings.transcription_providers),
            )

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - read-only home directories
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        write_text(self._path, body)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        data["variables"] = self._encrypt_variables(settings.variables)
        data["provider_variables"] = {
            provider_id: self._encrypt_variables(values)
            for provider_id, values in settings.provider_variables.items()
        }
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            return json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}

    def _encrypt_variables(self, values: Mapping[str, str]) -> Dict[str, str]:
        stored: Dict[str, str] = {}
        for name, value in values.items():
            if value and is_secret_variable(name):
                stored[name] = self._vault.encrypt(value)
                LOGGER.debug("Variable %s encrypted via %s backend", name, self._vault.strategy)
            else:
                stored[name] = value
        return stored

    def _decrypt_variables(self, payload: Any) -> tuple[Dict[str, str], bool]:
        if not isinstance(payload, Mapping):
            return {}, False
        values: Dict[str, str] = {}
        migrated = False
        for name, raw in payload.items():
            value = "" if raw is None else str(raw)
            if not (value and is_secret_variable(name)):
                values[str(name)] = value
                continue
            if not self._vault.is_token(value):
                LOGGER.info("Detected plaintext secret %s; migrating to encrypted storage.", name)
                values[str(name)] = value
                migrated = True
                continue
            try:
                values[str(name)] = self._vault.decrypt(value)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt variable %s: %s", name, exc)
                values[str(name)] = ""
        return values, migrated

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        variables_override = filtered.get("variables")
        if isinstance(variables_override, Mapping):
            merged = dict(settings.variables or {})
            merged.update({str(name): str(value) for name, value in variables_override.items()})
            filtered["variables"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        variables = {
            name[len(_VARIABLE_ENV_PREFIX):]: value
            for name, value in os.environ.items()
            if name.startswith(_VARIABLE_ENV_PREFIX) and len(name) > len(_VARIABLE_ENV_PREFIX)
        }
        if variables:
            overrides["variables"] = variables
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            continue
        result[key] = value
    return result


def is_secret_variable(name: str) -> bool:
    """Whether a placeholder variable holds a credential."""

    upper = name.upper()
    return any(marker in upper for marker in _SECRET_MARKERS)


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def redact_variables(values: Mapping[str, str] | None) -> dict[str, str]:
    if not isinstance(values, Mapping):
        return {}
    return {
        name: redact_secret(value) if is_secret_variable(name) else value
        for name, value in values.items()
    }
