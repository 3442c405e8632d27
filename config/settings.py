from enum import StrEnum

from pydantic_settings import BaseSettings


class LLMProvider(StrEnum):
    OLLAMA = "ollama"
    CLAUDE = "claude"
    GEMINI = "gemini"


class Settings(BaseSettings):
    # Google OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_auth_uri: str = "https://accounts.google.com/o/oauth2/v2/auth"
    google_token_uri: str = "https://oauth2.googleapis.com/token"
    google_tokeninfo_uri: str = "https://oauth2.googleapis.com/tokeninfo"
    google_scopes: list[str] = ["https://www.googleapis.com/auth/photospicker.mediaitems.readonly"]
    base_url: str = "http://localhost:8000"  # used to build the OAuth redirect URI
    refresh_token_max_age: int = 60 * 60 * 24 * 30  # authenticated cookie lifetime, seconds

    # Google Photos Picker
    picker_api_url: str = "https://photospicker.googleapis.com/v1"
    picker_page_size: int = 100
    provider_image_hosts: list[str] = ["googleusercontent.com", "photospicker.googleapis.com"]
    image_size_suffix: str = "=w1024-h1024"

    # LLM routing (vision extraction)
    vision_provider: LLMProvider = LLMProvider.GEMINI

    # Ollama
    ollama_base_url: str = "http://ollama:11434"
    ollama_vision_model: str = "qwen2.5-vl:7b"

    # Cloud providers (optional)
    claude_api_key: str = ""
    claude_model: str = "claude-sonnet-4-5-20250929"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    # Readwise
    readwise_access_token: str = ""
    readwise_api_url: str = "https://readwise.io/api/v2"

    # Database
    database_url: str = "sqlite+aiosqlite:///data/highlights.db"

    # Processing
    http_timeout: float = 30.0  # seconds, picker / token / image calls
    extraction_timeout: float = 120.0  # seconds, one AI vision call
    extraction_concurrency: int = 4

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/google/callback"


settings = Settings()
