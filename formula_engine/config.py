"""
Configuration for the calculated-field formula engine
Settings come from environment variables or a .env file
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings

    Every field can be overridden by the environment variable of the same
    name (case-insensitive), e.g. MAX_FORMULA_LENGTH=500.
    """

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "human"
    log_file: Optional[str] = None
    log_max_bytes: int = 10 * 1024 * 1024  # 10 MB
    log_backup_count: int = 5

    env: str = "development"  # "development" or "production"
    debug: bool = False

    # Parse limits; evaluation recurses over the AST so depth must stay bounded
    max_formula_length: int = Field(default=2000, gt=0)
    max_ast_depth: int = Field(default=50, gt=0)
    max_ast_nodes: int = Field(default=1000, gt=0)

    # Parsed-formula LRU cache
    ast_cache_enabled: bool = True
    ast_cache_max_size: int = Field(default=256, gt=0)

    # Decimal places applied when the caller passes no precision (None = no rounding)
    default_precision: Optional[int] = Field(default=None, ge=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def log_format_json(self) -> bool:
        return self.log_format.lower() == "json"

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Production always logs JSON
        if self.is_production and not self.log_format_json:
            self.log_format = "json"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance, loading it on first use

    Returns:
        Settings instance with current configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
