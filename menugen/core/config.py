# menugen/core/config.py
import os
import logging
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Settings:
    """Runtime configuration, read from the environment once at startup"""

    # Upload limits
    max_upload_bytes: int = 8 * 1024 * 1024

    # Storage
    store_backend: str = "supabase"  # "supabase" or "memory"
    supabase_url: str = ""
    supabase_key: str = ""
    images_bucket: str = "menu-images"
    persist_generated_images: bool = False

    # OpenAI
    openai_api_key: str = ""
    extraction_model: str = "gpt-4o"
    description_model: str = "gpt-4o-mini"

    # Image generation
    image_provider: str = "replicate"  # "replicate" or "dalle"
    replicate_api_key: str = ""
    replicate_model_url: str = "https://api.replicate.com/v1/models/black-forest-labs/flux-dev/predictions"
    image_poll_max_attempts: int = 10
    image_poll_base_delay: float = 1.0
    image_poll_timeout: float = 60.0

    # Retry for transient service failures
    service_max_retries: int = 3
    service_retry_delay: float = 2.0

    # Pipeline
    enrichment_concurrency: int = 3
    pipeline_timeout: float = 600.0
    base_currency: str = "USD"

    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", 8 * 1024 * 1024)),
            store_backend=os.getenv("STORE_BACKEND", "supabase").lower(),
            supabase_url=os.getenv("SUPABASE_URL", ""),
            # Service role key for backend operations
            supabase_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY", ""),
            images_bucket=os.getenv("SUPABASE_BUCKET_MENU_IMAGES", "menu-images"),
            persist_generated_images=_env_bool("PERSIST_GENERATED_IMAGES", "false"),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            extraction_model=os.getenv("EXTRACTION_MODEL", "gpt-4o"),
            description_model=os.getenv("DESCRIPTION_MODEL", "gpt-4o-mini"),
            image_provider=os.getenv("IMAGE_PROVIDER", "replicate").lower(),
            replicate_api_key=os.getenv("REPLICATE_API_KEY", ""),
            image_poll_max_attempts=int(os.getenv("IMAGE_POLL_MAX_ATTEMPTS", 10)),
            image_poll_base_delay=float(os.getenv("IMAGE_POLL_BASE_DELAY", 1.0)),
            image_poll_timeout=float(os.getenv("IMAGE_POLL_TIMEOUT", 60.0)),
            service_max_retries=int(os.getenv("SERVICE_MAX_RETRIES", 3)),
            service_retry_delay=float(os.getenv("SERVICE_RETRY_DELAY", 2.0)),
            enrichment_concurrency=int(os.getenv("ENRICHMENT_CONCURRENCY", 3)),
            pipeline_timeout=float(os.getenv("PIPELINE_TIMEOUT", 600.0)),
            base_currency=os.getenv("BASE_CURRENCY", "USD").upper(),
            cors_origins=origins or ["*"],
        )

    def missing_required(self) -> List[str]:
        """Names of required environment variables that are not set"""
        required = {"OPENAI_API_KEY": self.openai_api_key}
        if self.store_backend == "supabase":
            required["SUPABASE_URL"] = self.supabase_url
            required["SUPABASE_SERVICE_ROLE_KEY"] = self.supabase_key
        if self.image_provider == "replicate":
            required["REPLICATE_API_KEY"] = self.replicate_api_key
        return [name for name, value in required.items() if not value]
