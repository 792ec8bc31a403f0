from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """Application settings loaded from environment or .env file."""
    model_config = SettingsConfigDict(env_file=".env", env_prefix="ACCESSLENS_")

    APP_NAME: str = "AccessLens"
    VERSION: str = "1.0.0"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database configuration
    DATABASE_URL: str = "sqlite:///./accesslens.db"

    # Buckets and "today" are computed in this zone; empty means the server's local zone
    REPORT_TIMEZONE: str = ""

    # Collection
    BATCH_SIZE: int = 1000
    MAX_READ_BYTES: int = 100 * 1024 * 1024  # 100MB per cycle
    DEFAULT_COLLECT_INTERVAL: int = 60  # seconds
    DEFAULT_RETENTION_DAYS: int = 30
    WRITE_LEGACY_ROWS: bool = False
    SCHEDULER_WORKERS: int = 4
    ROLLUP_INTERVAL: int = 300  # seconds
    RUN_SCHEDULER: bool = True  # start the collector loop with the API server

    # Aggregation
    TOP_N: int = 10
    DIM_CACHE_SHARDS: int = 16

    # Geo lookup
    GEO_LOOKUP_ENABLED: bool = True
    GEO_API_URL: str = "http://ip-api.com/json/{ip}?fields=status,message,country,countryCode,regionName,city,isp"
    GEO_TIMEOUT: float = 5.0
    GEO_RATE_LIMIT_PER_SEC: float = 10.0  # ip-api.com free tier
    GEO_CACHE_SIZE: int = 10000

settings = Settings()
