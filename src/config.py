from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.3.0"

# Values written verbatim into the transcoder command line
SHELL_SAFE = r"^[A-Za-z0-9_.-]*$"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8086
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"
    ROOT_PATH: str = ""

    # Runtime environment, tagged into every transcoding process so one
    # deployment never controls the processes of another on the same host
    APP_ENV: str = Field(default="prod", pattern=SHELL_SAFE)

    # Transcoder configuration
    FFMPEG_BINARY: str = "ffmpeg"
    # When set, transcoder output is written to a log file in this directory
    # instead of /dev/null
    FFMPEG_LOG_DIRECTORY: Optional[str] = None
    FFMPEG_LOG_PREFIX: str = Field(default="livebroadcaster", pattern=SHELL_SAFE)
    # Upper bound (seconds) for the process table query
    PROCESS_LIST_TIMEOUT: float = 5.0
    # Upper bound (seconds) for the shell that backgrounds a new transcoder
    PROCESS_START_TIMEOUT: float = 5.0

    # Scheduler loop
    EVENTLOOP_ENABLED: bool = False
    EVENTLOOP_TIMER: float = 10.0

    # YouTube Data API
    YOUTUBE_CLIENT_ID: Optional[str] = None
    YOUTUBE_CLIENT_SECRET: Optional[str] = None
    YOUTUBE_API_URL: str = "https://www.googleapis.com/youtube/v3"
    YOUTUBE_UPLOAD_URL: str = "https://www.googleapis.com/upload/youtube/v3"
    YOUTUBE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    YOUTUBE_REQUEST_TIMEOUT: float = 30.0
    # Resumable uploads require multiples of 256 KB
    THUMBNAIL_CHUNK_SIZE: int = 1024 * 1024

    # Redis Configuration for the shared tick lock and broadcast store
    REDIS_HOST: str = "localhost"
    REDIS_SERVER_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_ENABLED: bool = False
    # Seconds before an abandoned tick lock expires
    TICK_LOCK_TIMEOUT: int = 300

    # API Authentication
    API_TOKEN: Optional[str] = None

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
