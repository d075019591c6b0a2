from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Remote entity service
    SERVICE_URL: str = "http://localhost:8080"
    API_PATH: str = "/api/data/v9.2"
    ACCESS_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Query execution
    MAX_CONCURRENCY: int = 5
    CONNECTIVITY_PROBE: str = "systemusers?$select=systemuserid&$top=1"

    # Saved views cannot resolve against a local dev service
    LOCAL_DEVELOPMENT: bool = False

    # Discovery caches (None = keep until an explicit clear)
    SCHEMA_CACHE_TTL_SECONDS: Optional[float] = None
    SCHEMA_WAIT_TIMEOUT_SECONDS: float = 5.0
    RECORD_SAMPLE_SIZE: int = 5

    # Error diagnosis
    ENABLE_RUNTIME_DISCOVERY: bool = True
    ERROR_HISTORY_LIMIT: int = 100

    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
