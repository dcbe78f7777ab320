"""Configuration settings for packer_images.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_lock_dir() -> Path:
    """Return the default directory for pipeline lock files."""
    return Path.home() / ".cache" / "packer-images" / "locks"


def _default_log_dir() -> Path:
    """Return the default directory for build logs."""
    return Path.home() / ".local" / "share" / "packer-images" / "logs"


# Output patterns of transient infrastructure failures worth a second attempt
DEFAULT_RETRYABLE_PATTERNS = [
    r"RequestLimitExceeded",
    r"Timeout waiting for (SSH|WinRM)",
    r"connection reset by peer",
    r"i/o timeout",
    r"TLS handshake timeout",
    r"agent.*(went offline|disconnected)",
]


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the PKR_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="PKR_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    repo_root: Path = Field(
        default_factory=Path.cwd,
        description="Repository root holding the Packer templates",
    )
    template_dir: Path = Field(
        default=Path("."),
        description="Packer template directory, relative to repo_root",
    )
    manifests_dir: Path = Field(
        default=Path("updatecli/updatecli.d"),
        description="updatecli manifests directory, relative to repo_root",
    )
    values_file: Path | None = Field(
        default=None,
        description="updatecli values file (generated from settings if not set)",
    )
    lock_dir: Path = Field(
        default_factory=_default_lock_dir,
        description="Directory for pipeline lock files",
    )
    log_dir: Path = Field(
        default_factory=_default_log_dir,
        description="Directory for per-cell build logs",
    )

    # External tools
    packer_bin: str = Field(default="packer", description="Packer executable")
    docker_bin: str = Field(default="docker", description="Docker executable")
    updatecli_bin: str = Field(default="updatecli", description="updatecli executable")
    cleanup_aws_command: str = Field(
        default="./cleanup/aws.sh",
        description="Command cleaning up stale AWS resources",
    )
    cleanup_azure_command: str = Field(
        default="./cleanup/azure.sh",
        description="Command cleaning up stale Azure resources",
    )

    # Build identity
    primary_branch: str = Field(default="main", description="Primary branch name")
    image_name_template: str = Field(
        default="jenkinsciinfra/jenkins-agent-{agent_type}",
        description="Container image name, formatted with the matrix cell",
    )
    default_image_version: str = Field(
        default="0.0.1",
        description="Image version used on untagged runs",
    )
    arm64_docker_host: str | None = Field(
        default=None,
        description="DOCKER_HOST of the native arm64 daemon",
    )

    # Operational modes
    dry_run: bool = Field(
        default=False,
        description="Log commands without executing them",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency and retries
    max_parallel_cells: int = Field(
        default=8,
        ge=1,
        le=32,
        description="Maximum matrix cells built at once",
    )
    build_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Total attempts of a build step on retryable failures",
    )
    retryable_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_PATTERNS),
        description="Regex patterns marking a build failure as retryable",
    )

    # Timeouts (in seconds)
    pipeline_timeout: int = Field(
        default=7200,
        ge=60,
        description="Wall-clock bound of a whole pipeline run",
    )
    lock_timeout: int | None = Field(
        default=None,
        description="Timeout waiting for the primary-branch lock (None = wait)",
    )
    http_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for upstream HTTP queries",
    )

    # updatecli values
    github_user: str = Field(default="jenkins-infra-updatecli")
    github_email: str = Field(default="178728+jenkins-infra-updatecli@users.noreply.github.com")
    github_owner: str = Field(default="jenkins-infra")
    github_repository: str = Field(default="packer-images")
    github_username: str = Field(default="jenkins-infra-bot")
    github_branch: str = Field(default="main")
    github_token_env: str = Field(
        default="UPDATECLI_GITHUB_TOKEN",
        description="Environment variable holding the GitHub token",
    )

    @property
    def template_path(self) -> Path:
        """Absolute Packer template directory."""
        return self.repo_root / self.template_dir

    @property
    def manifests_path(self) -> Path:
        """Absolute updatecli manifests directory."""
        return self.repo_root / self.manifests_dir


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["DEFAULT_RETRYABLE_PATTERNS", "Settings", "get_settings", "print_settings_json"]
