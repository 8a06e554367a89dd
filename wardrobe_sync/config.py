"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Local image storage
    documents_dir: str = "./documents"
    wardrobe_bucket: str = "wardrobe-images"
    scan_bucket: str = "scan-images"

    # Durable queue state
    queue_state_path: str = "./documents/upload_queue.json"
    queue_key: str = "fitmatch.uploadQueue.v1"

    # Upload queue policy
    max_upload_attempts: int = 3
    retry_delays_ms: List[int] = [5000, 30000, 120000]
    recent_uri_ttl_ms: int = 60_000
    idle_debounce_ms: int = 100
    min_wakeup_delay_ms: int = 1000

    # Upload encoding
    compress_images: bool = False  # re-encode before upload (smaller, lossy)
    compress_max_width: int = 1600
    compress_max_height: int = 2000
    compress_quality: int = 92
    upload_cache_control: str = "3600"

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
