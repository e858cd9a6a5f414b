"""Configuration management with pydantic-settings for the Bitbucket Server importer.

Loads from (in order of precedence):
1. Environment variables (highest priority)
2. .env file in the working directory
3. Default values (lowest priority)

Per-project import definitions live in YAML files under projects.d/ and are
loaded with discover_import_projects().
"""

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ImportProject

logger = logging.getLogger("bitbucket_import.config")

__all__ = [
    "DEFAULT_PAGE_LIMIT",
    "ImportConfig",
    "discover_import_projects",
    "get_config",
    "reset_config",
]

# Bitbucket Server page size used by the pull request importer
DEFAULT_PAGE_LIMIT = 50

# Processed-set entries expire after a day, matching the import cache window
DEFAULT_CACHE_TTL_SECONDS = 86400


class ImportConfig(BaseSettings):
    """Configuration for the Bitbucket Server pull request importer.

    Attributes:
        bitbucket_server_url: Bitbucket Server base URL (e.g., https://bitbucket.example.com)
        bitbucket_server_username: Account used for Basic Auth
        bitbucket_server_password: Password or HTTP access token (SecretStr)
        page_limit: Pull requests requested per API page
        request_delay_ms: Delay between page requests for rate limiting
        fetch_commits_for_bitbucket_server: Feature toggle for keep-around ref fetching
        job_batch_size: Jobs scheduled per delay step
        job_batch_interval_seconds: Delay added for each full batch of jobs
        processed_cache_ttl_seconds: Lifetime of processed-set entries
        state_dir: Directory holding processed sets, job queue and failure log
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format (json for production, text for development)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    bitbucket_server_url: str = Field(
        default="",
        description="Bitbucket Server base URL",
    )
    bitbucket_server_username: str = Field(
        default="",
        description="Bitbucket Server account for Basic Auth",
    )
    bitbucket_server_password: SecretStr = Field(
        default=SecretStr(""),
        description="Bitbucket Server password or HTTP access token",
    )

    page_limit: int = Field(
        default=DEFAULT_PAGE_LIMIT,
        ge=1,
        le=1000,
        description="Pull requests per API page",
    )
    request_delay_ms: int = Field(
        default=100,
        ge=0,
        le=10000,
        description="Delay between paginated requests in milliseconds",
    )

    fetch_commits_for_bitbucket_server: bool = Field(
        default=True,
        description="Fetch merge-request head and keep-around refs for merged/declined pull requests",
    )

    job_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Number of jobs sharing the same scheduling delay",
    )
    job_batch_interval_seconds: int = Field(
        default=60,
        ge=0,
        le=3600,
        description="Delay step between job batches in seconds",
    )

    processed_cache_ttl_seconds: int = Field(
        default=DEFAULT_CACHE_TTL_SECONDS,
        ge=60,
        le=7 * DEFAULT_CACHE_TTL_SECONDS,
        description="Expiry for processed-set entries in seconds",
    )

    state_dir: Path = Field(
        default=Path("~/.bitbucket-import/state"),
        description="Directory for processed sets, job queue and failure records",
    )
    projects_dir: Path = Field(
        default=Path("~/.bitbucket-import/projects.d"),
        description="Directory of per-project import YAML files",
    )

    metrics_push_enabled: bool = Field(
        default=False,
        description="Push run metrics to a Prometheus Pushgateway",
    )
    pushgateway_url: str = Field(
        default="localhost:9091",
        description="Pushgateway host:port",
    )

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or text)")

    @field_validator("state_dir", "projects_dir", mode="before")
    @classmethod
    def expand_user_paths(cls, v):
        """Expand ~ and environment variables in paths."""
        if isinstance(v, str):
            return Path(os.path.expanduser(os.path.expandvars(v)))
        if isinstance(v, Path):
            return Path(os.path.expanduser(os.path.expandvars(str(v))))
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in {"json", "text"}:
            raise ValueError(f"Invalid log format: {v}")
        return fmt

    @model_validator(mode="after")
    def validate_server_credentials(self) -> "ImportConfig":
        """Username and password must be configured together."""
        has_user = bool(self.bitbucket_server_username)
        has_password = bool(self.bitbucket_server_password.get_secret_value())
        if has_user != has_password:
            raise ValueError(
                "BITBUCKET_SERVER_USERNAME and BITBUCKET_SERVER_PASSWORD must be set together"
            )
        return self

    @property
    def processed_set_path(self) -> Path:
        return self.state_dir / "processed_sets.json"

    @property
    def job_queue_path(self) -> Path:
        return self.state_dir / "job_queue.jsonl"

    @property
    def failures_path(self) -> Path:
        return self.state_dir / "import_failures.jsonl"


def discover_import_projects(config_dir: Path | None = None) -> dict[int, ImportProject]:
    """Scan projects.d/ for per-project import YAML files.

    Each file holds one project:

        project_id: 42
        import_url: https://bitbucket.example.com/scm/key/slug.git
        repository_path: /var/repos/42.git
        bitbucket:
          project_key: KEY
          repo_slug: slug

    Args:
        config_dir: Directory to scan. Defaults to BITBUCKET_IMPORT_PROJECTS_DIR,
                    then ~/.bitbucket-import/projects.d

    Returns:
        Dict mapping project id to ImportProject. Malformed files are skipped.
    """
    import yaml

    if config_dir is None:
        env_dir = os.environ.get("BITBUCKET_IMPORT_PROJECTS_DIR")
        if env_dir:
            config_dir = Path(env_dir)
        else:
            config_dir = Path.home() / ".bitbucket-import" / "projects.d"

    projects: dict[int, ImportProject] = {}

    if not config_dir.is_dir():
        return projects

    for path in sorted(config_dir.glob("*.yaml")):
        try:
            raw = yaml.safe_load(path.read_text())
            if not raw or raw.get("project_id") is None:
                logger.warning("Skipping %s: missing project_id", path.name)
                continue
            bitbucket = raw.get("bitbucket") or {}
            project = ImportProject(
                id=int(raw["project_id"]),
                import_url=raw["import_url"],
                project_key=bitbucket["project_key"],
                repo_slug=bitbucket["repo_slug"],
                repository_path=Path(raw["repository_path"]).expanduser(),
            )
            projects[project.id] = project
        except (yaml.YAMLError, KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed project config %s: %s", path.name, e)
        except OSError as e:
            logger.error("Cannot read project config %s: %s", path.name, e)

    return projects


@lru_cache(maxsize=1)
def get_config() -> ImportConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return
    the cached instance.

    Raises:
        ValidationError: If configuration values are invalid.
    """
    return ImportConfig()


def reset_config() -> None:
    """Reset configuration singleton for testing."""
    get_config.cache_clear()
