from __future__ import annotations

import pytest

_ENV_VARS = (
    "GITLAB_HOST",
    "GITLAB_PROJECT",
    "GITLAB_TOKEN",
    "GITLAB_CLIENT_ID",
    "XDG_CONFIG_HOME",
)


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    """Point the config directory at a temp dir and drop GitLab env vars."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    config = tmp_path / "config"
    monkeypatch.setenv("GITLAB_CLI_CONFIG_DIR", str(config))
    return config


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
