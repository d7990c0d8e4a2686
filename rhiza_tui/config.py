import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from .models import Repository
from .workflow import DEFAULT_BRANCH_PREFIX, DEFAULT_SETTLE_DELAY

log = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "rhiza-tui"
CONFIG_FILE = CONFIG_DIR / "config.json"


class ConfigError(Exception):
    pass


# =============================================================================
# Repository list
# =============================================================================

def load_repositories(path: Path) -> list[Repository]:
    """Read ``{"repositories": [{"name": ..., "path": ...}, ...]}``.

    Relative paths are resolved against the current directory. A missing
    name defaults to the directory name.
    """
    try:
        data = json.loads(Path(path).read_text())
    except OSError as e:
        raise ConfigError(f"failed to read config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"failed to parse config file: {e}") from e

    entries = data.get("repositories") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ConfigError("failed to parse config file: 'repositories' must be a list")

    repos = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or not isinstance(entry.get("path"), str) or not entry["path"]:
            raise ConfigError(f"repository #{i + 1} has no path")
        repo_path = Path(entry["path"]).expanduser().resolve()
        name = entry.get("name") or repo_path.name
        if not isinstance(name, str):
            raise ConfigError(f"repository #{i + 1} has an invalid name")
        repos.append(Repository(name=name, path=repo_path))
    return repos


# =============================================================================
# User settings
# =============================================================================

@dataclass
class Settings:
    """Dashboard settings with persistence."""
    settle_delay: float = DEFAULT_SETTLE_DELAY
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    message_timeout: float = 2.0
    log_file: str | None = None

    @classmethod
    def load(cls, path: Path = CONFIG_FILE) -> "Settings":
        """Load settings from disk or return defaults.

        A value of the wrong type keeps that setting's default.
        """
        if not path.exists():
            return cls()
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            log.warning("ignoring unreadable settings file %s: %s", path, e)
            return cls()
        if not isinstance(data, dict):
            log.warning("ignoring settings file %s: not an object", path)
            return cls()

        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = _checked(f.default, data[f.name])
            if value is _INVALID:
                log.warning("ignoring %s=%r in %s: expected %s", f.name, data[f.name], path,
                            "a non-negative number" if isinstance(f.default, float) else "a string")
                continue
            values[f.name] = value
        return cls(**values)

    def save(self, path: Path = CONFIG_FILE) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)


_INVALID = object()


def _checked(default, value):
    """Return ``value`` coerced to the type of ``default``, or _INVALID."""
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return _INVALID
        return float(value)
    if isinstance(value, str) and value:
        return value
    if default is None and value is None:
        return None
    return _INVALID


def load_settings(path: Path = CONFIG_FILE) -> Settings:
    """Load settings, writing the defaults out on first run."""
    settings = Settings.load(path)
    if not path.exists():
        try:
            settings.save(path)
        except OSError as e:
            log.warning("could not write default settings to %s: %s", path, e)
        else:
            log.info("wrote default settings to %s", path)
    return settings
