from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # TMDB (override via env)
    TMDB_API_KEY: str = ""
    TMDB_BASE_URL: str = "https://api.themoviedb.org/3"
    REQUEST_TIMEOUT: float = 10.0
    MAX_RETRIES: int = 5

    # Caching
    COMPONENT_CACHE_SIZE: int = 50  # LRU capacity for assembled pages
    PREFETCH_ON_STARTUP: bool = False
    DEFAULT_LANGUAGE: str = "en-US"

    class Config:
        env_file = ".env"

settings = Settings()
