"""Configuration management for the notes attendant."""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration is missing, unreadable or invalid."""

    pass


class VaultRootError(ConfigError):
    """Raised when the vault root is not set or is not a usable directory."""

    pass


def default_config_path() -> Path:
    """Location of the configuration file (``NTA_CONFIG`` wins over XDG)."""
    explicit = os.getenv("NTA_CONFIG")
    if explicit:
        return Path(explicit).expanduser()

    base = os.getenv("XDG_CONFIG_HOME")
    config_home = Path(base).expanduser() if base else Path.home() / ".config"
    return config_home / "nta" / "config.yaml"


@dataclass(slots=True, frozen=True)
class AttendantConfig:
    """Settings shared by every vault operation."""

    DEFAULT_NOTE_EXTENSIONS: ClassVar[list[str]] = [".md", ".canvas"]

    # dotted key -> (file section, file key, field name)
    KEYS: ClassVar[dict[str, tuple[str, str, str]]] = {
        "vault.root": ("vault", "root", "vault_root"),
        "vault.files": ("vault", "files", "files_path"),
        "vault.daily": ("vault", "daily", "daily_path"),
        "apod.path": ("apod", "path", "apod_path"),
        "apod.key": ("apod", "key", "apod_key"),
        "apod.banner": ("apod", "banner", "apod_banner"),
        "apod.icon": ("apod", "icon", "apod_icon"),
        "apod.prefix": ("apod", "prefix", "apod_prefix"),
        "apod.marker": ("apod", "marker", "apod_marker"),
        "twir.path": ("twir", "path", "twir_path"),
        "twir.banner": ("twir", "banner", "twir_banner"),
        "twir.icon": ("twir", "icon", "twir_icon"),
        "twir.prefix": ("twir", "prefix", "twir_prefix"),
        "twir.marker": ("twir", "marker", "twir_marker"),
        "raindrop.path": ("raindrop", "path", "raindrop_path"),
        "raindrop.prefix": ("raindrop", "prefix", "raindrop_prefix"),
        "pipeline.max_concurrency": ("pipeline", "max_concurrency", "max_concurrency"),
    }
    PATH_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"vault_root", "files_path", "daily_path", "apod_path", "twir_path", "raindrop_path"}
    )

    vault_root: Path | None = None
    files_path: Path = Path("files")
    daily_path: Path = Path("daily")
    apod_path: Path = Path("issues/apod")
    twir_path: Path = Path("issues/twir")
    raindrop_path: Path = Path("raindrop")
    raindrop_prefix: str | None = None

    apod_key: str | None = None
    apod_banner: str | None = None
    apod_icon: str | None = None
    apod_prefix: str | None = None
    apod_marker: str | None = None

    twir_banner: str | None = None
    twir_icon: str | None = None
    twir_prefix: str | None = None
    twir_marker: str | None = None

    max_concurrency: int = 32
    note_extensions: list[str] = field(
        default_factory=lambda: AttendantConfig.DEFAULT_NOTE_EXTENSIONS.copy()
    )

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be positive, got {self.max_concurrency}")
        if not self.note_extensions:
            raise ValueError("note_extensions must not be empty")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "AttendantConfig":
        """Create configuration from the sectioned mapping stored on disk."""
        values: dict[str, Any] = {}
        for section, key, name in cls.KEYS.values():
            section_data = data.get(section) or {}
            if not isinstance(section_data, dict):
                raise ConfigError(f"Configuration section '{section}' must be a mapping")
            if section_data.get(key) is None:
                continue
            try:
                values[name] = cls._convert(name, section_data[key])
            except ValueError as e:
                raise ConfigError(f"Illegal configuration value for {section}.{key}: {e}") from e
        try:
            return cls(**values)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    @classmethod
    def load(cls, path: Path | None = None, apply_env: bool = True) -> "AttendantConfig":
        """
        Load configuration from the YAML file, then apply environment overrides.

        A missing file yields the defaults. Environment overrides are skipped
        with ``apply_env=False`` so they never end up in a saved file.
        """
        path = path or default_config_path()
        data: dict[str, Any] = {}
        if path.is_file():
            try:
                loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse configuration file {path}: {e}") from e
            if loaded is not None and not isinstance(loaded, dict):
                raise ConfigError(f"Configuration file {path} must contain a mapping")
            data = loaded or {}
            logger.debug(f"Loaded configuration from {path}")
        else:
            logger.debug(f"Configuration file {path} not found, using defaults")

        config = cls.from_mapping(data)
        return config.with_env_overrides() if apply_env else config

    def with_env_overrides(self) -> "AttendantConfig":
        """Apply ``NTA_*`` environment variables on top of this configuration."""
        overrides: dict[str, Any] = {}
        vault_root = os.getenv("NTA_VAULT_ROOT")
        if vault_root:
            overrides["vault_root"] = Path(vault_root).expanduser().resolve()
        apod_key = os.getenv("NTA_APOD_KEY")
        if apod_key:
            overrides["apod_key"] = apod_key
        max_concurrency = os.getenv("NTA_MAX_CONCURRENCY")
        if max_concurrency:
            try:
                overrides["max_concurrency"] = self._convert("max_concurrency", max_concurrency)
            except ValueError as e:
                raise ConfigError(f"Illegal NTA_MAX_CONCURRENCY value: {e}") from e

        if not overrides:
            return self
        try:
            return dataclasses.replace(self, **overrides)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    def to_mapping(self) -> dict[str, Any]:
        """Sectioned mapping suitable for saving."""
        data: dict[str, dict[str, Any]] = {}
        for section, key, name in self.KEYS.values():
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, Path):
                value = str(value)
            data.setdefault(section, {})[key] = value
        return data

    def save(self, path: Path | None = None) -> Path:
        """Write the configuration file, creating its directory if needed."""
        path = path or default_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            yaml.safe_dump(self.to_mapping(), default_flow_style=False, sort_keys=False),
            encoding="utf-8",
        )
        logger.info(f"Saved configuration to {path}")
        return path

    def with_value(self, key: str, value: str, update: bool = False) -> "AttendantConfig":
        """
        Return a copy with one dotted configuration key changed.

        Args:
            key: Dotted key such as ``vault.root`` (case-insensitive)
            value: New value as typed on the command line
            update: When changing ``vault.root``, re-base absolute sub-paths
                that lived under the old root

        Raises:
            ConfigError: If the key is unknown or the value is illegal
        """
        entry = self.KEYS.get(key.strip().lower())
        if entry is None:
            raise ConfigError(f"Illegal configuration key: {key}")
        name = entry[2]

        try:
            converted = self._convert(name, value)
        except ValueError as e:
            raise ConfigError(f"Illegal configuration value {value!r} for {key}: {e}") from e

        changes: dict[str, Any] = {name: converted}
        if name == "vault_root":
            converted = converted.expanduser().resolve()
            if not converted.is_dir():
                raise VaultRootError(f"Illegal vault root path: {converted}")
            changes[name] = converted
            if update and self.vault_root is not None:
                changes.update(self._rebased_paths(self.vault_root, converted))

        try:
            return dataclasses.replace(self, **changes)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    def _rebased_paths(self, old_root: Path, new_root: Path) -> dict[str, Path]:
        rebased = {}
        for name in self.PATH_FIELDS - {"vault_root"}:
            current: Path = getattr(self, name)
            if not current.is_absolute():
                continue
            try:
                relative = current.relative_to(old_root)
            except ValueError:
                continue
            rebased[name] = new_root / relative
        return rebased

    @classmethod
    def _convert(cls, name: str, value: Any) -> Any:
        if name in cls.PATH_FIELDS:
            return Path(str(value)).expanduser()
        if name == "max_concurrency":
            return int(value)
        return str(value)

    def require_root(self) -> Path:
        """
        Return the vault root, failing fast when it is not usable.

        Raises:
            VaultRootError: If the root is unset, missing or not a directory
        """
        if self.vault_root is None:
            raise VaultRootError("The vault root path is not set (use `nta config vault.root`)")
        if not self.vault_root.exists() or not self.vault_root.is_dir():
            raise VaultRootError(f"Illegal vault root path: {self.vault_root}")
        return self.vault_root

    def resolve(self, path: Path) -> Path:
        """Resolve a configured sub-path against the vault root."""
        if path.is_absolute():
            return path
        return self.require_root() / path

    @property
    def files_dir(self) -> Path:
        return self.resolve(self.files_path)

    @property
    def daily_dir(self) -> Path:
        return self.resolve(self.daily_path)

    @property
    def apod_dir(self) -> Path:
        return self.resolve(self.apod_path)

    @property
    def twir_dir(self) -> Path:
        return self.resolve(self.twir_path)

    @property
    def raindrop_dir(self) -> Path:
        return self.resolve(self.raindrop_path)
