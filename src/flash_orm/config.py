"""
Settings for the Flash ORM package.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrmSettings(BaseSettings):
    """
    Runtime settings read from the environment (``FLASH_ORM_*``) or ``.env``.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLASH_ORM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Database ---
    DATABASE_URL: str | None = None
    DB_ECHO: bool = False

    # --- Pagination ---
    DEFAULT_PER_PAGE: int = 15
    MAX_PER_PAGE: int = 500

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_QUERIES: bool = False

    @model_validator(mode="after")
    def validate_pagination(self) -> "OrmSettings":
        """Keeps the default page size inside the allowed range."""
        if not 1 <= self.DEFAULT_PER_PAGE <= self.MAX_PER_PAGE:
            msg = "DEFAULT_PER_PAGE must be between 1 and MAX_PER_PAGE."
            raise ValueError(msg)
        return self


# Singleton instance used across the package
orm_settings = OrmSettings()
