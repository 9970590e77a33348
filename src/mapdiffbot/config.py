from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import Mapping, cast


ACCESS_TOKEN_KEY = "AccessToken"
IMGUR_ID_KEY = "ImgurID"
IMGUR_SECRET_KEY = "ImgurSecret"


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    mergeable_poll_attempts: int = 5
    mergeable_poll_delay_seconds: float = 5.0
    map_extension: str = ".dmm"

    @property
    def repos_dir(self) -> Path:
        return self.base_dir / "repos"

    @property
    def output_dir(self) -> Path:
        return self.base_dir / "map_diffs"


@dataclass(frozen=True)
class RenderConfig:
    tool_path: str = "dmm-tools"


@dataclass(frozen=True)
class GitConfig:
    author_name: str = "mapdiffbot"
    author_email: str = "mapdiffbot@users.noreply.github.com"


@dataclass(frozen=True)
class SecretsConfig:
    access_token_env: str = "MAPDIFFBOT_GITHUB_TOKEN"
    imgur_id_env: str = "MAPDIFFBOT_IMGUR_ID"
    imgur_secret_env: str = "MAPDIFFBOT_IMGUR_SECRET"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    render: RenderConfig = RenderConfig()
    git: GitConfig = GitConfig()
    secrets: SecretsConfig = SecretsConfig()


class ConfigError(ValueError):
    pass


class SecretStore(ABC):
    @abstractmethod
    async def get_secret(self, key: str) -> str:
        """Return the secret stored under ``key`` or raise ConfigError."""


class EnvSecretStore(SecretStore):
    def __init__(self, config: SecretsConfig, environ: Mapping[str, str] | None = None) -> None:
        self._env_names = {
            ACCESS_TOKEN_KEY: config.access_token_env,
            IMGUR_ID_KEY: config.imgur_id_env,
            IMGUR_SECRET_KEY: config.imgur_secret_env,
        }
        self._environ = environ if environ is not None else os.environ

    async def get_secret(self, key: str) -> str:
        env_name = self._env_names.get(key)
        if env_name is None:
            raise ConfigError(f"Unknown secret key: {key}")
        value = self._environ.get(env_name, "").strip()
        if not value:
            raise ConfigError(f"Secret {key} is not set (expected environment variable {env_name})")
        return value


class StaticSecretStore(SecretStore):
    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = dict(values)

    async def get_secret(self, key: str) -> str:
        try:
            return self._values[key]
        except KeyError:
            raise ConfigError(f"Secret {key} is not set") from None


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    render_data = _optional_table(data, "render") or {}
    git_data = _optional_table(data, "git") or {}
    secrets_data = _optional_table(data, "secrets") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        mergeable_poll_attempts=_int_with_default(runtime_data, "mergeable_poll_attempts", 5),
        mergeable_poll_delay_seconds=_float_with_default(
            runtime_data, "mergeable_poll_delay_seconds", 5.0
        ),
        map_extension=_str_with_default(runtime_data, "map_extension", ".dmm"),
    )
    if runtime.mergeable_poll_attempts < 0:
        raise ConfigError("runtime.mergeable_poll_attempts must be >= 0")
    if runtime.mergeable_poll_delay_seconds < 0:
        raise ConfigError("runtime.mergeable_poll_delay_seconds must be >= 0")
    if not runtime.map_extension.startswith("."):
        raise ConfigError("runtime.map_extension must start with '.'")

    return AppConfig(
        runtime=runtime,
        render=RenderConfig(tool_path=_str_with_default(render_data, "tool_path", "dmm-tools")),
        git=GitConfig(
            author_name=_str_with_default(git_data, "author_name", GitConfig.author_name),
            author_email=_str_with_default(git_data, "author_email", GitConfig.author_email),
        ),
        secrets=SecretsConfig(
            access_token_env=_str_with_default(
                secrets_data, "access_token_env", SecretsConfig.access_token_env
            ),
            imgur_id_env=_str_with_default(
                secrets_data, "imgur_id_env", SecretsConfig.imgur_id_env
            ),
            imgur_secret_env=_str_with_default(
                secrets_data, "imgur_secret_env", SecretsConfig.imgur_secret_env
            ),
        ),
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    table = _optional_table(data, key)
    if table is None:
        raise ConfigError(f"[{key}] table is required")
    return table


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    if key not in data:
        return default
    return _require_str(data, key)


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)
