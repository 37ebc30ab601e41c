"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.orchestration.tool_governor import DEFAULT_TOOL_LIMITS

__all__ = [
    "Settings",
    "TaskSettings",
    "SettingsStore",
    "SecretVault",
    "apply_overrides",
    "DEFAULT_TOOL_CALL_LIMITS",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".bookloom"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "BOOKLOOM_API_KEY": "api_key",
    "BOOKLOOM_BASE_URL": "base_url",
    "BOOKLOOM_MODEL": "model",
    "BOOKLOOM_ORGANIZATION": "organization",
    "BOOKLOOM_TARGET_LANGUAGE": "target_language",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "BOOKLOOM_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "BOOKLOOM_REQUEST_TIMEOUT": "request_timeout",
    "BOOKLOOM_TEMPERATURE": "task.temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "BOOKLOOM_CHUNK_SIZE": "task.chunk_size",
    "BOOKLOOM_MAX_TURNS": "task.max_turns",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"
_SECRET_PREFIX = "fernet"

DEFAULT_TOOL_CALL_LIMITS: Mapping[str, int] = DEFAULT_TOOL_LIMITS


@dataclass(slots=True)
class TaskSettings:
    """Tunables of the document task loop."""

    chunk_size: int = 8000
    max_turns: int = 40
    max_consecutive_status: int = 2
    max_content_mismatch_retries: int = 2
    max_degradation_retries: int = 2
    stream_check_interval: int = 50
    stream_min_length: int = 20
    repeat_threshold: int = 80
    repeat_check_window: int = 100
    pattern_repeat_threshold: int = 30
    tool_call_limits: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TOOL_CALL_LIMITS))
    temperature: float = 0.7


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between runs."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    target_language: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False
    task: TaskSettings = field(default_factory=TaskSettings)


class SecretVault:
    """Encrypts the API key with a symmetric Fernet key stored beside the settings."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def strategy(self) -> str:
        return _SECRET_PREFIX

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{_SECRET_PREFIX}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload:
            prefix, payload = _SECRET_PREFIX, token
        if prefix != _SECRET_PREFIX:
            raise ValueError(f"Unknown secret backend '{prefix}'")
        try:
            raw = self._get_fernet().decrypt(payload.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
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


class SettingsStore:
    """Persistence adapter for :class:`Settings`.

    Overrides are applied in order: file, then ``overrides`` passed to
    :meth:`load` (CLI), then ``BOOKLOOM_*`` environment variables. Override keys
    address nested task settings with a ``task.`` prefix
    (``task.chunk_size``).
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            api_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None))
            data = _filter_fields(payload, Settings, label="settings")
            task_payload = data.pop("task", None)
            if isinstance(task_payload, Mapping):
                data["task"] = TaskSettings(**_filter_fields(task_payload, TaskSettings, label="task settings"))
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if api_key:
                settings = replace(settings, api_key=api_key)
            LOGGER.debug("Settings loaded from %s", self._path)

        if overrides:
            settings = apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _decrypt_api_key(self, ciphertext: str | None, plaintext: str | None) -> str:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return ""
        if plaintext:
            LOGGER.info("Settings file holds a plaintext API key; it is encrypted on the next save.")
            return str(plaintext)
        return ""

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
        if overrides:
            settings = apply_overrides(settings, overrides, source="environment")
        return settings


def apply_overrides(
    settings: Settings,
    overrides: Mapping[str, Any],
    *,
    source: str = "runtime",
) -> Settings:
    """Return ``settings`` with ``overrides`` applied; unknown keys are ignored."""

    allowed = {item.name for item in fields(Settings)}
    task_allowed = {item.name for item in fields(TaskSettings)}
    filtered: Dict[str, Any] = {}
    task_filtered: Dict[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key.startswith("task."):
            name = key[len("task."):]
            if name in task_allowed:
                task_filtered[name] = value
                continue
        elif key in allowed and key != "task":
            filtered[key] = value
            continue
        LOGGER.warning("Ignoring unknown %s setting override '%s'", source, key)
    metadata_override = filtered.get("metadata")
    if isinstance(metadata_override, Mapping):
        merged_metadata = dict(settings.metadata or {})
        merged_metadata.update(metadata_override)
        filtered["metadata"] = merged_metadata
    if task_filtered:
        filtered["task"] = replace(settings.task, **task_filtered)
    if filtered:
        LOGGER.debug(
            "Applying %s settings overrides: %s", source, sorted([*filtered, *(f"task.{k}" for k in task_filtered)])
        )
        settings = replace(settings, **filtered)
    return settings


def _filter_fields(payload: Mapping[str, Any], target: type, *, label: str) -> Dict[str, Any]:
    allowed = {item.name for item in fields(target)} - {"api_key"}
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            if key not in {"version", "secret_backend", _API_KEY_FIELD}:
                LOGGER.warning("Ignoring unknown %s key '%s'", label, key)
            continue
        result[key] = value
    return result


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
