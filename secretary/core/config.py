"""
Application configuration via pydantic-settings.

Loads values from .env file with sensible defaults for local development.
Use ``get_settings()`` to obtain the cached singleton instance.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Secretary settings loaded from environment / .env file.

    All settings can be overridden via environment variables or a `.env` file.
    Field names map directly to env var names (case-insensitive).

    Attributes:
        remote_mode: How the device reaches the remote store ("sql" talks to
            the database directly, "http" goes through the API server).
        max_retry_count: Failed attempts allowed before a recording needs a
            manual retry.
        retry_base_seconds: Backoff base unit; the n-th failure waits
            ``base * 2**min(n, 5)`` seconds, capped by ``retry_cap_seconds``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Silently ignore unrecognized env vars
    )

    # --- Remote store ---
    remote_mode: str = "sql"  # "sql" or "http"
    remote_base_url: str = "http://localhost:8000"
    remote_api_key: str = ""  # Bearer key required by the API server when set
    database_url: str = "sqlite+aiosqlite:///data/secretary.db"
    user_id: str = ""  # Account the device acts for

    # --- Device cache ---
    cache_database_url: str = "sqlite+aiosqlite:///data/device_cache.db"
    cache_ttl_seconds: float = 86_400.0  # Remote-only cache entries older than this are dropped
    recordings_dir: str = "data/recordings"  # Captured audio files on the device

    # --- Object storage ---
    storage_dir: str = "data/storage"  # Server-side audio object directory
    storage_public_url: str = "http://localhost:8000/storage"

    # --- Queue driver ---
    max_retry_count: int = 3
    retry_base_seconds: float = 60.0
    retry_cap_seconds: float = 1_920.0  # 60s * 2**5
    queue_interval_seconds: float = 5.0
    queue_batch_size: int = 5
    queue_concurrency: int = 1  # >1 processes a batch with a bounded worker pool
    stalled_after_seconds: float = 600.0  # 0 disables in-flight stall recovery

    # --- Timeouts (seconds) ---
    upload_timeout_seconds: float = 60.0
    transcribe_timeout_seconds: float = 120.0
    webhook_timeout_seconds: float = 30.0
    remote_timeout_seconds: float = 15.0
    subscribe_timeout_seconds: float = 10.0

    # --- Change propagation ---
    poll_interval_seconds: float = 10.0
    poll_initial_delay_seconds: float = 2.0
    poll_fetch_limit: int = 50
    poll_reconcile_deletes: bool = False
    reconnect_first_delay_seconds: float = 15.0
    reconnect_base_delay_seconds: float = 10.0
    reconnect_max_delay_seconds: float = 160.0
    reconnect_max_attempts: int = 5

    # --- Connectivity ---
    connectivity_probe_seconds: float = 15.0

    # --- Webhook ---
    webhook_url: str = ""  # Default endpoint when the user profile has none

    # --- Speech-to-text ---
    stt_provider: str = "groq"  # "groq" (API) or "local" (faster-whisper)
    stt_language: str = "en"
    whisper_model: str = "base"  # Model size: tiny, base, small, medium, large-v3

    # --- LLM (title + transcript correction) ---
    llm_provider: str = "groq"  # "groq", "claude" or "ollama"
    groq_api_key: str = ""
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_stt_model: str = "whisper-large-v3-turbo"
    groq_llm_model: str = "llama-3.1-70b-versatile"
    claude_api_key: str = ""
    claude_model: str = "claude-sonnet-4-20250514"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"

    # --- Application ---
    app_host: str = "0.0.0.0"  # Bind address for the FastAPI server
    app_port: int = 8000
    log_level: str = "INFO"  # Python logging level


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings singleton.

    Uses ``functools.lru_cache`` so the .env file is read only once.
    Subsequent calls return the same ``Settings`` instance.

    Returns:
        Settings: The application-wide configuration object.
    """
    return Settings()
