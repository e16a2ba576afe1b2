from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # General
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_color: str = Field(default="none")
    allowed_origins: str = Field(default="http://localhost:3000")

    # Database Configuration
    database_url: str = Field(default="sqlite:///./pipeline_runs.db")
    database_pool_size: int = Field(default=5)
    database_max_overflow: int = Field(default=10)

    # Workspace
    workspace_dir: str = Field(default=".")
    artifacts_dir: str = Field(default="./run_artifacts")
    definitions_dir: str = Field(default="./pipelines")
    project_name: str = Field(default="app")

    # Engine limits
    pipeline_timeout_minutes: int = Field(default=45)
    cleanup_grace_seconds: int = Field(default=300)
    command_timeout_seconds: int = Field(default=1800)

    # Health polling presets
    health_max_attempts: int = Field(default=10)
    health_interval_seconds: float = Field(default=3.0)
    reachability_max_attempts: int = Field(default=30)
    reachability_interval_seconds: float = Field(default=2.0)
    health_request_timeout_seconds: float = Field(default=5.0)

    # Quality gate
    sonar_host_url: str = Field(default="")
    sonar_token: str = Field(default="")
    quality_gate_timeout_seconds: int = Field(default=300)
    quality_gate_poll_interval_seconds: float = Field(default=5.0)

    # Scans
    dependency_check_cvss_threshold: float = Field(default=7.0)

    # Secrets and staging
    secret_env_prefix: str = Field(default="PIPELINE_SECRET_")
    staging_container_name: str = Field(default="app-staging")
    staging_port: int = Field(default=8080)

    @property
    def allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def pipeline_timeout_seconds(self) -> float:
        return self.pipeline_timeout_minutes * 60.0

    def validate(self) -> None:
        errors = []
        if self.pipeline_timeout_minutes <= 0:
            errors.append("PIPELINE_TIMEOUT_MINUTES must be positive")
        if self.health_max_attempts <= 0 or self.reachability_max_attempts <= 0:
            errors.append("health poll attempts must be positive")
        if self.log_color not in ("none", "ansi", "xterm"):
            errors.append("LOG_COLOR must be one of none, ansi, xterm")
        if self.dependency_check_cvss_threshold < 0 or self.dependency_check_cvss_threshold > 10:
            errors.append("DEPENDENCY_CHECK_CVSS_THRESHOLD must be within 0..10")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


settings = Settings()
