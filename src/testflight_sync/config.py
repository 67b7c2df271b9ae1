"""
Configuration management.

All configuration for testflight-sync lives here: API credentials, the list
of monitored apps and the data directory layout.

Data directory resolution order:
  1. explicit ``--data-dir``
  2. ``./testflight-data/`` (only if it already holds a config.yaml)
  3. ``~/.testflight-sync/``
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

CONFIG_FILENAME = "config.yaml"
DB_FILENAME = "feedback.db"
LOGS_DIRNAME = "logs"
SCREENSHOTS_DIRNAME = "screenshots"

LOCAL_DATA_DIR = Path("testflight-data")
GLOBAL_DATA_DIR_NAME = ".testflight-sync"

DEFAULT_BASE_URL = "https://api.appstoreconnect.apple.com"


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ApiConfig:
    """App Store Connect API credentials.

    private_key holds the resolved PEM text, never the path it was read from.
    """

    issuer_id: str
    key_id: str
    private_key: str
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: int = 30


@dataclass
class AppEntry:
    """A monitored app, keyed by bundle identifier."""

    bundle_id: str
    name: str | None = None


@dataclass
class Config:
    """Application configuration."""

    api: ApiConfig
    apps: list[AppEntry] = field(default_factory=list)
    data_dir: Path = field(default_factory=lambda: LOCAL_DATA_DIR)

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / LOGS_DIRNAME

    @property
    def screenshots_dir(self) -> Path:
        return self.data_dir / SCREENSHOTS_DIRNAME

    def validate(self) -> list[str]:
        """Validate configuration completeness.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.api.issuer_id:
            errors.append("api.issuer_id is required")
        if not self.api.key_id:
            errors.append("api.key_id is required")
        if not self.api.private_key:
            errors.append("api.private_key is required")
        if not self.api.base_url:
            errors.append("api.base_url must not be empty")

        if not self.apps:
            errors.append("at least one entry under 'apps' is required")

        seen: set[str] = set()
        for app in self.apps:
            if not app.bundle_id:
                errors.append("every app entry needs a bundle_id")
            elif app.bundle_id in seen:
                errors.append(f"duplicate app entry: {app.bundle_id}")
            seen.add(app.bundle_id)

        return errors


def resolve_data_dir(explicit: Path | None = None) -> Path:
    """Pick the data directory (see module docstring for the order)."""
    if explicit is not None:
        return Path(explicit)

    if (LOCAL_DATA_DIR / CONFIG_FILENAME).exists():
        return LOCAL_DATA_DIR.resolve()

    return Path.home() / GLOBAL_DATA_DIR_NAME


def init_data_dir(global_: bool = False) -> Path:
    """Return the directory that ``init`` should populate."""
    if global_:
        return Path.home() / GLOBAL_DATA_DIR_NAME
    return LOCAL_DATA_DIR


def resolve_private_key(value: str, relative_to: Path) -> str:
    """
    Resolve a private key setting to PEM text.

    The value is either inline PEM or a path to a .p8 file. Paths may start
    with ``~`` and relative paths are taken relative to the data directory.
    """
    if value.lstrip().startswith("-----BEGIN"):
        return value

    path = Path(value).expanduser()
    if not path.is_absolute():
        path = relative_to / path

    if not path.exists():
        raise ConfigValidationError(
            f"private_key '{value}' is not a PEM string and file not found at {path}"
        )

    try:
        return path.read_text()
    except OSError as e:
        raise ConfigValidationError(f"could not read key file {path}: {e}") from e


def load_config(data_dir: Path) -> Config:
    """
    Load configuration from ``<data_dir>/config.yaml``.

    Environment variables override file values:
    - ASC_ISSUER_ID
    - ASC_KEY_ID
    - ASC_PRIVATE_KEY (inline PEM or key file path)
    - ASC_BASE_URL

    Raises:
        ConfigValidationError: file missing or unreadable, invalid YAML,
            unresolvable key, or failed validation.
    """
    config_path = data_dir / CONFIG_FILENAME
    if not config_path.exists():
        raise ConfigValidationError(
            f"No config found. Run `testflight-sync init` first.\nLooked in: {data_dir}"
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigValidationError(f"could not read {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigValidationError(f"{config_path} must contain a mapping")

    api_data = data.get("api") or {}
    raw_key = os.environ.get("ASC_PRIVATE_KEY", api_data.get("private_key", ""))

    api = ApiConfig(
        issuer_id=os.environ.get("ASC_ISSUER_ID", api_data.get("issuer_id", "")),
        key_id=os.environ.get("ASC_KEY_ID", api_data.get("key_id", "")),
        private_key=resolve_private_key(raw_key, data_dir) if raw_key else "",
        base_url=os.environ.get("ASC_BASE_URL", api_data.get("base_url", DEFAULT_BASE_URL)),
        timeout_seconds=int(api_data.get("timeout_seconds", 30)),
    )

    apps = []
    for entry in data.get("apps") or []:
        if isinstance(entry, str):
            apps.append(AppEntry(bundle_id=entry))
        else:
            apps.append(AppEntry(bundle_id=entry.get("bundle_id", ""), name=entry.get("name")))

    config = Config(api=api, apps=apps, data_dir=data_dir)

    errors = config.validate()
    if errors:
        raise ConfigValidationError(
            f"invalid configuration in {config_path}:\n  - " + "\n  - ".join(errors)
        )

    return config


DEFAULT_CONFIG = """# testflight-sync configuration
#
# API credentials from App Store Connect:
#   https://appstoreconnect.apple.com/access/integrations/api

api:
  issuer_id: "YOUR_ISSUER_ID"
  key_id: "YOUR_KEY_ID"
  private_key: "path/to/AuthKey_XXXXXXXX.p8"   # path (relative to this dir) or inline PEM
  # base_url: "https://api.appstoreconnect.apple.com"
  # timeout_seconds: 30

# Apps to monitor for TestFlight crashes and feedback.
# Use `testflight-sync apps` to verify your key works.
apps:
  - bundle_id: "com.example.myapp"
    # name: "My App"   # optional friendly label
"""


def create_default_config(config_path: Path) -> bool:
    """Write the template config unless one exists. Returns True if written."""
    if config_path.exists():
        return False

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(DEFAULT_CONFIG)
    return True
