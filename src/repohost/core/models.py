import shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError

from repohost.utils.diagnostics import ConfigInvalid

# Opaque source-history identifier; compared only for equality.
Revision = str

RELEASE_METADATA_FILE = ".repohost-release.json"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class CommandSpec(BaseModel):
    """
    A program plus its argument list. Never handed to a shell.
    """
    model_config = ConfigDict(frozen=True)

    argv: List[str] = Field(min_length=1)

    @classmethod
    def parse(cls, command: str) -> "CommandSpec":
        """Split a command line using POSIX shell-word rules."""
        return cls(argv=shlex.split(command))

    @property
    def program(self) -> str:
        return self.argv[0]

    def __str__(self) -> str:
        return shlex.join(self.argv)


def _validate_command(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        parts = shlex.split(value)
    except ValueError as exc:
        raise ValueError(f"Unparseable command '{value}': {exc}") from exc
    if not parts:
        raise ValueError("Command cannot be empty.")
    return value


class HostSettings(BaseSettings):
    """
    Supervisor settings (the 'repohost' section in repohost.yaml).

    Unset fields fall back to environment variables of the same upper-case name,
    so REPO_URL, BRANCH, CHECK_INTERVAL, START_COMMAND and INSTALL_COMMAND work as-is.
    """
    model_config = SettingsConfigDict(env_prefix='', extra='ignore', frozen=True)

    repo_url: str = Field(min_length=1)
    branch: str = "main"
    check_interval: float = Field(default=60, gt=0)

    start_command: str = "npm start"
    install_command: str = "npm install"
    strict_install_command: Optional[str] = "npm ci"
    install_fallback: bool = True

    manifest_file: str = "package.json"
    lockfile: str = "package-lock.json"
    dependency_artifact: str = "node_modules"

    releases_dir: Path = Path("/app/releases")
    current_link: Path = Path("/app/current")
    state_file: Optional[Path] = None
    keep_releases: int = Field(default=3, ge=1)

    grace_period: float = Field(default=10, ge=0)
    port_release_delay: float = Field(default=2, ge=0)
    retry_failed_revisions: bool = True

    @field_validator("start_command", "install_command", "strict_install_command")
    @classmethod
    def check_commands(cls, value: Optional[str]) -> Optional[str]:
        return _validate_command(value)

    @property
    def start_spec(self) -> CommandSpec:
        return CommandSpec.parse(self.start_command)

    @property
    def install_spec(self) -> CommandSpec:
        return CommandSpec.parse(self.install_command)

    @property
    def strict_install_spec(self) -> Optional[CommandSpec]:
        if self.strict_install_command is None:
            return None
        return CommandSpec.parse(self.strict_install_command)

    @property
    def state_path(self) -> Path:
        if self.state_file is not None:
            return self.state_file
        return self.releases_dir.parent / "supervisor.json"

    @classmethod
    def reserved_env_names(cls) -> FrozenSet[str]:
        """Environment names that configure the supervisor and must not reach the child."""
        return frozenset(name.upper() for name in cls.model_fields)


class RuntimeConfig(BaseModel):
    """
    Frozen configuration record handed to every component at startup.
    """
    model_config = ConfigDict(frozen=True)

    settings: HostSettings
    child_env: Dict[str, str] = Field(default_factory=dict)


def build_runtime_config(config_dict: Optional[Dict[str, Any]] = None) -> RuntimeConfig:
    """Validate a loaded config mapping (plus the environment) into a RuntimeConfig."""
    config_dict = config_dict or {}
    section = config_dict.get("repohost") or {}
    extra_env = config_dict.get("env") or {}

    if not isinstance(section, dict):
        raise ConfigInvalid("The 'repohost' section must be a mapping.")
    if not isinstance(extra_env, dict):
        raise ConfigInvalid("The 'env' section must be a mapping.")

    try:
        settings = HostSettings(**section)
    except (ValidationError, SettingsError) as exc:
        raise ConfigInvalid(f"Invalid supervisor settings: {exc}") from exc

    child_env = {str(key): "" if value is None else str(value) for key, value in extra_env.items()}
    return RuntimeConfig(settings=settings, child_env=child_env)


class ReleaseMetadata(BaseModel):
    """Persisted marker written into a release once its dependencies are installed."""

    revision: Revision = Field(min_length=1)
    created_at: str


class Release(BaseModel):
    """
    A materialized, installed snapshot of one revision.
    """
    model_config = ConfigDict(frozen=True)

    revision: Revision
    path: Path
    created_at: str

    @property
    def metadata_path(self) -> Path:
        return self.path / RELEASE_METADATA_FILE
