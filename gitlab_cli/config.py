"""Settings for gitlab-cli -- config.toml reader and writer.

Settings live in ``config.toml`` inside the config directory
(``$GITLAB_CLI_CONFIG_DIR`` or ``~/.config/gitlab-cli``).  Built-in
defaults apply when no file is present, and a handful of environment
variables override whatever the file says.

Public API
----------
config_dir() -> Path
load_config(directory) -> CliConfig
update_config(updates, directory) -> Path
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional

from gitlab_cli.errors import ConfigError

# Same client ID as glab for gitlab.com
DEFAULT_CLIENT_ID = "41d48f9422ebd655dd9cf2947d6979681dfaddc6d0c56f7628f6ada59559af1e"
DEFAULT_SCOPES = "openid profile read_user write_repository api"

CONFIG_FILENAME = "config.toml"

# ---------------------------------------------------------------------------
# Default values (canonical source of truth)
# ---------------------------------------------------------------------------

DEFAULTS: dict[str, Any] = {
    "gitlab": {
        "host": "https://gitlab.com",
        "project": "",
        "token": "",
    },
    "oauth": {
        "client_id": DEFAULT_CLIENT_ID,
        "scopes": DEFAULT_SCOPES,
    },
    "automerge": {
        "poll_interval": 10.0,
        "max_duration": 3600.0,
        "max_poll_retries": 5,
        "max_merge_retries": 3,
        "backoff_base": 2.0,
        "backoff_max": 60.0,
    },
}

ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GITLAB_HOST": ("gitlab", "host"),
    "GITLAB_PROJECT": ("gitlab", "project"),
    "GITLAB_TOKEN": ("gitlab", "token"),
    "GITLAB_CLIENT_ID": ("oauth", "client_id"),
}


@dataclass
class GitlabConfig:
    host: str = "https://gitlab.com"
    project: str = ""
    token: str = ""


@dataclass
class OAuthConfig:
    client_id: str = DEFAULT_CLIENT_ID
    scopes: str = DEFAULT_SCOPES


@dataclass
class AutoMergeSettings:
    """Timing bounds for one auto-merge run (seconds / attempt counts)."""

    poll_interval: float = 10.0
    max_duration: float = 3600.0
    max_poll_retries: int = 5
    max_merge_retries: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 60.0

    def backoff(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        delay = self.backoff_base * (2 ** max(attempt - 1, 0))
        return min(delay, self.backoff_max)

    def validate(self) -> None:
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be greater than zero")
        for name in ("max_duration", "max_poll_retries", "max_merge_retries", "backoff_base", "backoff_max"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")


@dataclass
class CliConfig:
    gitlab: GitlabConfig = field(default_factory=GitlabConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    automerge: AutoMergeSettings = field(default_factory=AutoMergeSettings)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_toml(self) -> str:
        """Render as TOML; strings are written as JSON-escaped basic strings."""
        lines = [
            "# config.toml -- gitlab-cli settings",
            "# GITLAB_HOST, GITLAB_PROJECT, GITLAB_TOKEN and GITLAB_CLIENT_ID",
            "# override the values below.",
            "",
        ]
        for section, values in self.to_dict().items():
            lines.append(f"[{section}]")
            for key, val in values.items():
                if isinstance(val, bool):
                    lines.append(f"{key} = {'true' if val else 'false'}")
                elif isinstance(val, str):
                    lines.append(f"{key} = {json.dumps(val)}")
                else:
                    lines.append(f"{key} = {val!r}")
            lines.append("")
        return "\n".join(lines)


def config_dir() -> Path:
    """Directory holding config.toml and the credential file."""
    override = os.environ.get("GITLAB_CLI_CONFIG_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    base = os.environ.get("XDG_CONFIG_HOME", "").strip()
    root = Path(base).expanduser() if base else Path.home() / ".config"
    return root / "gitlab-cli"


# ---------------------------------------------------------------------------
# Minimal TOML reader: [section] headers, key = value, # comments.
# ---------------------------------------------------------------------------

_BASIC_STRING = re.compile(r'"(?:[^"\\]|\\.)*"')


def _parse_toml_value(raw: str, lineno: int = 0) -> Any:
    """Parse the right-hand side of ``key = value``, trailing comment included."""
    raw = raw.strip()
    if raw.startswith('"'):
        match = _BASIC_STRING.match(raw)
        if match is None:
            raise ConfigError(f"line {lineno}: unterminated string")
        _expect_comment(raw[match.end():], lineno)
        try:
            return json.loads(match.group(0))
        except ValueError as exc:
            raise ConfigError(f"line {lineno}: bad escape in string") from exc
    if raw.startswith("'"):
        end = raw.find("'", 1)
        if end == -1:
            raise ConfigError(f"line {lineno}: unterminated string")
        _expect_comment(raw[end + 1:], lineno)
        return raw[1:end]

    value = raw.split("#", 1)[0].strip()
    if not value:
        raise ConfigError(f"line {lineno}: missing value")
    if value in ("true", "false"):
        return value == "true"
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value


def _expect_comment(rest: str, lineno: int) -> None:
    rest = rest.strip()
    if rest and not rest.startswith("#"):
        raise ConfigError(f"line {lineno}: unexpected text after string: {rest!r}")


def _parse_toml(text: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    section: Optional[dict[str, Any]] = None
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("["):
            header = line.split("#", 1)[0].strip()
            if not header.endswith("]") or not header[1:-1].strip():
                raise ConfigError(f"line {lineno}: bad section header {line!r}")
            section = result.setdefault(header[1:-1].strip(), {})
            continue
        key, sep, raw_val = line.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"line {lineno}: expected 'key = value', got {line!r}")
        target = section if section is not None else result
        target[key.strip()] = _parse_toml_value(raw_val, lineno)
    return result


def _layer(*layers: dict) -> dict:
    """Combine nested dicts; later layers win key by key, recursing into tables."""
    combined: dict = {}
    for layer in layers:
        for key, val in layer.items():
            below = combined.get(key)
            if isinstance(below, dict) and isinstance(val, dict):
                combined[key] = _layer(below, val)
            elif isinstance(val, dict):
                combined[key] = _layer(val)
            else:
                combined[key] = val
    return combined


def _env_layer() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def _read_file(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read {config_path}: {exc}") from exc
    try:
        return _parse_toml(text)
    except ConfigError as exc:
        raise ConfigError(f"{config_path}: {exc}") from exc


def _build(raw: dict[str, Any]) -> CliConfig:
    am = raw["automerge"]
    try:
        automerge = AutoMergeSettings(
            poll_interval=float(am["poll_interval"]),
            max_duration=float(am["max_duration"]),
            max_poll_retries=int(am["max_poll_retries"]),
            max_merge_retries=int(am["max_merge_retries"]),
            backoff_base=float(am["backoff_base"]),
            backoff_max=float(am["backoff_max"]),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid [automerge] value: {exc}") from exc
    automerge.validate()

    gitlab, oauth = raw["gitlab"], raw["oauth"]
    return CliConfig(
        gitlab=GitlabConfig(
            host=str(gitlab["host"]),
            project=str(gitlab["project"]),
            token=str(gitlab["token"]),
        ),
        oauth=OAuthConfig(client_id=str(oauth["client_id"]), scopes=str(oauth["scopes"])),
        automerge=automerge,
    )


def load_config(directory: Optional[Path] = None) -> CliConfig:
    """Load config.toml from *directory*, falling back to defaults.

    Raises :class:`ConfigError` when the file exists but is malformed or
    holds out-of-range values.
    """
    directory = directory or config_dir()
    file_data = _read_file(directory / CONFIG_FILENAME)
    return _build(_layer(DEFAULTS, file_data, _env_layer()))


def update_config(updates: dict[str, dict[str, Any]], directory: Optional[Path] = None) -> Path:
    """Merge *updates* into config.toml and rewrite it.

    Environment overrides are not written back.  The file may hold a token,
    so it is created with mode 0600 and replaced atomically.
    """
    directory = directory or config_dir()
    config_path = directory / CONFIG_FILENAME
    cfg = _build(_layer(DEFAULTS, _read_file(config_path), updates))

    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".config.", suffix=".tmp", dir=str(directory))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(cfg.to_toml())
        os.replace(tmp_name, config_path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise ConfigError(f"cannot write {config_path}: {exc}") from exc
    return config_path
