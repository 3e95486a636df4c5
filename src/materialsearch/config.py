"""Settings dataclass and JSON persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "DEFAULT_THREAD_PREAMBLE",
    "REASONING_EFFORT_CHOICES",
    "REASONING_SUMMARY_CHOICES",
    "apply_admin_updates",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_DATA_DIR = Path.home() / ".materialsearch"
_SETTINGS_FILENAME = "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "MATERIALSEARCH_API_KEY": "api_key",
    "MATERIALSEARCH_BASE_URL": "base_url",
    "MATERIALSEARCH_MODEL": "default_model",
    "MATERIALSEARCH_PREAMBLE": "default_thread_preamble",
    "MATERIALSEARCH_REASONING_EFFORT": "reasoning_effort",
    "MATERIALSEARCH_REASONING_SUMMARY": "reasoning_summary",
    "MATERIALSEARCH_CORPUS_DIR": "corpus_root",
    "MATERIALSEARCH_DATA_DIR": "data_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "MATERIALSEARCH_COMPACTION": "compaction_enabled",
    "MATERIALSEARCH_TURN_LOGGING": "turn_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "MATERIALSEARCH_TURN_TIMEOUT": "turn_timeout_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "MATERIALSEARCH_MAX_TURNS": "max_turns",
    "MATERIALSEARCH_COMPACTION_THRESHOLD": "compaction_threshold",
    "MATERIALSEARCH_SESSION_WRITE_RETRIES": "session_write_retries",
}
_JSON_ENV_OVERRIDES: Mapping[str, str] = {
    "MATERIALSEARCH_PRICING_JSON": "pricing_overrides",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_API_KEY_FIELD = "api_key_ciphertext"

REASONING_EFFORT_CHOICES: tuple[str, ...] = ("minimal", "low", "medium", "high")
REASONING_SUMMARY_CHOICES: tuple[str, ...] = ("auto", "concise", "detailed")

DEFAULT_THREAD_PREAMBLE = (
    "You are a meticulous materials research assistant. Answer the user's question "
    "from the document corpus, in the language the user writes in."
)

# (field, minimum, maximum)
_CLAMPS: tuple[tuple[str, float, float], ...] = (
    ("max_turns", 1, 100),
    ("turn_timeout_seconds", 1.0, 3600.0),
    ("compaction_threshold", 1024, 1_000_000),
    ("session_write_retries", 1, 10),
)


@dataclass(slots=True)
class Settings:
    """Operator-configurable settings persisted between server restarts."""

    api_key: str = ""
    base_url: str | None = None
    default_model: str = "gpt-5-mini"
    default_thread_preamble: str = DEFAULT_THREAD_PREAMBLE
    reasoning_effort: str = "low"
    reasoning_summary: str = "auto"
    max_turns: int = 25
    turn_timeout_seconds: float = 600.0
    compaction_enabled: bool = True
    compaction_threshold: int = 160_000
    corpus_root: str = "./corpus"
    data_dir: str = str(_DATA_DIR)
    turn_logging: bool = True
    session_write_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    pricing_overrides: dict[str, dict[str, float]] = field(default_factory=dict)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()


class SecretVault:
    """Encrypts the API key with a Fernet key stored beside the settings file."""

    def __init__(self, key_path: Path) -> None:
        self._key_path = key_path
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        return self._get_fernet().encrypt(secret.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        try:
            return self._get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            LOGGER.warning("Stored API key could not be decrypted with %s", self._key_path)
            return ""

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        key = Fernet.generate_key()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        self._key_path.write_bytes(key)
        try:
            os.chmod(self._key_path, 0o600)
        except OSError:  # pragma: no cover - platform dependent
            LOGGER.debug("Unable to restrict permissions on %s", self._key_path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (_DATA_DIR / _SETTINGS_FILENAME)
        self._vault = vault or SecretVault(self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply runtime and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            api_key = self._vault.decrypt(payload.pop(_API_KEY_FIELD, None))
            try:
                settings = Settings(**_filter_fields(payload))
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if api_key:
                settings = replace(settings, api_key=api_key)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        settings = self._apply_env_overrides(settings)
        return _clamp(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings atomically; the API key is stored encrypted."""

        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        body = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str,
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
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
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        for env_name, field_name in _JSON_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if not value:
                continue
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                LOGGER.warning("Environment override %s is not valid JSON", env_name)
                continue
            if isinstance(parsed, dict):
                overrides[field_name] = parsed
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def apply_admin_updates(settings: Settings, updates: Mapping[str, Any]) -> Settings:
    """Return ``settings`` with operator updates applied and clamped.

    Unknown keys are ignored. Blank strings leave the current value in place.
    Raises ``ValueError`` for an unsupported reasoning effort or summary mode.
    """

    changes: Dict[str, Any] = {}
    for key in ("default_model", "default_thread_preamble", "corpus_root"):
        value = updates.get(key)
        if isinstance(value, str) and value.strip():
            changes[key] = value.strip()

    effort = updates.get("reasoning_effort")
    if effort is not None:
        normalized = str(effort).strip().lower()
        if normalized not in REASONING_EFFORT_CHOICES:
            raise ValueError(f"reasoning_effort must be one of {', '.join(REASONING_EFFORT_CHOICES)}")
        changes["reasoning_effort"] = normalized

    summary = updates.get("reasoning_summary")
    if summary is not None:
        normalized = str(summary).strip().lower()
        if normalized not in REASONING_SUMMARY_CHOICES:
            raise ValueError(f"reasoning_summary must be one of {', '.join(REASONING_SUMMARY_CHOICES)}")
        changes["reasoning_summary"] = normalized

    if "compaction_enabled" in updates:
        changes["compaction_enabled"] = bool(updates["compaction_enabled"])

    for key, caster in (
        ("max_turns", int),
        ("compaction_threshold", int),
        ("turn_timeout_seconds", float),
    ):
        value = updates.get(key)
        if value is None:
            continue
        try:
            changes[key] = caster(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{key} must be numeric") from exc

    if not changes:
        return settings
    return _clamp(replace(settings, **changes))


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def _clamp(settings: Settings) -> Settings:
    changes: Dict[str, Any] = {}
    defaults = Settings()
    for name, minimum, maximum in _CLAMPS:
        current = getattr(settings, name)
        default = getattr(defaults, name)
        caster = type(default)
        try:
            value = caster(current)
        except (TypeError, ValueError):
            LOGGER.warning("Setting %s=%r is not a valid %s; using %s", name, current, caster.__name__, default)
            value = default
        bounded = caster(min(max(value, minimum), maximum))
        if bounded != current or type(bounded) is not type(current):
            changes[name] = bounded
    if settings.reasoning_effort not in REASONING_EFFORT_CHOICES:
        LOGGER.warning("Unknown reasoning_effort '%s'; using 'low'", settings.reasoning_effort)
        changes["reasoning_effort"] = "low"
    if settings.reasoning_summary not in REASONING_SUMMARY_CHOICES:
        changes["reasoning_summary"] = "auto"
    return replace(settings, **changes) if changes else settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}
