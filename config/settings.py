import tempfile
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Dict, Any, List, Optional
from pydantic_settings import BaseSettings

# Constants
MASKED = "***MASKED***"
SENSITIVE_FIELDS = ("CLIENT_SECRET", "REFRESH_TOKEN")
PROFILE_NAMES = ("standard", "large")


@dataclass(frozen=True)
class PipelineProfile:
    """
    One archive pipeline configuration.

    Route variants that only differed in batch size, timeouts or compression
    are expressed as profiles instead of separate code paths.
    """

    name: str
    concurrency: int
    per_file_timeout: float
    max_retries: int
    retry_delay: float
    deadline: float
    compression: str
    store_above_entries: Optional[int]
    transport: str
    chunk_size: int
    spool_max_bytes: int

    def compression_for(self, entry_count: int) -> str:
        """Compression to use for a job with ``entry_count`` entries."""
        if self.store_above_entries is not None and entry_count > self.store_above_entries:
            return "none"
        return self.compression


class Settings(BaseSettings):
    """Service configuration loaded from environment / .env."""

    # GOOGLE DRIVE CREDENTIAL (single pre-provisioned refresh token)
    CLIENT_ID: Optional[str] = None
    CLIENT_SECRET: Optional[str] = None
    REFRESH_TOKEN: Optional[str] = None
    REDIRECT_URI: Optional[str] = None

    # DRIVE API
    DRIVE_API_TIMEOUT: float = 30.0
    DRIVE_LIST_PAGE_SIZE: int = 1000
    LISTING_MAX_RETRIES: int = 2
    MAX_FOLDER_DEPTH: int = 64

    # SERVER
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    CORS_ORIGINS: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    # ARCHIVE PIPELINE (standard profile)
    ZIP_CONCURRENCY: int = 5
    ZIP_FILE_TIMEOUT: float = 60.0
    ZIP_MAX_RETRIES: int = 3
    ZIP_RETRY_DELAY: float = 1.0
    ZIP_JOB_DEADLINE: float = 300.0
    ZIP_COMPRESSION: str = "balanced"
    ZIP_STORE_ABOVE_ENTRIES: Optional[int] = 100
    ZIP_TRANSPORT: str = "tempfile"
    ZIP_CHUNK_SIZE: int = 64 * 1024
    SPOOL_MAX_BYTES: int = 8 * 1024 * 1024

    # ARCHIVE PIPELINE (large profile, for big galleries)
    ZIP_LARGE_CONCURRENCY: int = 2
    ZIP_LARGE_JOB_DEADLINE: float = 2700.0
    ZIP_LARGE_COMPRESSION: str = "fast"
    ZIP_LARGE_STORE_ABOVE_ENTRIES: Optional[int] = 50

    # TEMP FILES
    TEMP_DIR: str = tempfile.gettempdir()
    TEMP_FILE_PREFIX: str = "folder-"
    TEMP_SWEEP_INTERVAL_SECONDS: float = 1800.0
    TEMP_MAX_AGE_MINUTES: float = 60.0

    # PLANNING ENDPOINTS
    DOWNLOAD_INFO_SAMPLE_SIZE: int = 20
    MULTI_ZIP_THRESHOLD: int = 500
    MULTI_ZIP_CHUNK_SIZE: int = 250

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def cors_origins(self) -> List[str]:
        """CORS_ORIGINS split on commas."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def has_drive_credentials(self) -> bool:
        return bool(self.CLIENT_ID and self.CLIENT_SECRET and self.REFRESH_TOKEN)

    def profile(self, name: str = "standard") -> PipelineProfile:
        """
        Build a pipeline profile by name.

        Args:
            name: "standard" or "large"

        Returns:
            PipelineProfile

        Raises:
            ValueError: If the profile name is unknown
        """
        standard = PipelineProfile(
            name="standard",
            concurrency=self.ZIP_CONCURRENCY,
            per_file_timeout=self.ZIP_FILE_TIMEOUT,
            max_retries=self.ZIP_MAX_RETRIES,
            retry_delay=self.ZIP_RETRY_DELAY,
            deadline=self.ZIP_JOB_DEADLINE,
            compression=self.ZIP_COMPRESSION,
            store_above_entries=self.ZIP_STORE_ABOVE_ENTRIES,
            transport=self.ZIP_TRANSPORT,
            chunk_size=self.ZIP_CHUNK_SIZE,
            spool_max_bytes=self.SPOOL_MAX_BYTES,
        )
        if name == "standard":
            return standard
        if name == "large":
            return replace(
                standard,
                name="large",
                concurrency=self.ZIP_LARGE_CONCURRENCY,
                deadline=self.ZIP_LARGE_JOB_DEADLINE,
                compression=self.ZIP_LARGE_COMPRESSION,
                store_above_entries=self.ZIP_LARGE_STORE_ABOVE_ENTRIES,
            )
        raise ValueError(
            f"Unknown profile '{name}'. Expected one of: {', '.join(PROFILE_NAMES)}"
        )

    def mask_sensitive_data(self) -> Dict[str, Any]:
        """
        Return config with secrets masked for safe logging.

        Returns:
            Dict[str, Any]: Configuration with secrets replaced by ***MASKED***
        """
        config = self.model_dump()
        for key in SENSITIVE_FIELDS:
            if config.get(key):
                config[key] = MASKED
        return config


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings singleton.

    Returns:
        Settings: Singleton instance of service settings
    """
    return Settings()
