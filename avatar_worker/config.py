"""
Worker configuration.

Settings are read once at process start (after load_dotenv) and handed to
each component's constructor; nothing below main.py reads os.environ.
"""

import os
from dataclasses import dataclass, field


@dataclass
class KieSettings:
    api_key: str = field(default_factory=lambda: os.getenv("KIE_API_KEY", ""))
    api_base: str = field(default_factory=lambda: os.getenv("KIE_API_BASE", "https://api.kie.ai/api/v1"))
    timeout: float = 60.0
    # Backoff applies to status polling only; submissions never retry.
    poll_max_retries: int = field(default_factory=lambda: int(os.getenv("KIE_POLL_MAX_RETRIES", "3")))
    poll_base_delay: float = 2.0


@dataclass
class SupabaseSettings:
    url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    service_role_key: str = field(default_factory=lambda: os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""))


@dataclass
class CloudinarySettings:
    cloud_name: str = field(default_factory=lambda: os.getenv("CLOUDINARY_CLOUD_NAME", ""))
    api_key: str = field(default_factory=lambda: os.getenv("CLOUDINARY_API_KEY", ""))
    api_secret: str = field(default_factory=lambda: os.getenv("CLOUDINARY_API_SECRET", ""))
    timeout: float = 300.0

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)


@dataclass
class Settings:
    kie: KieSettings = field(default_factory=KieSettings)
    supabase: SupabaseSettings = field(default_factory=SupabaseSettings)
    cloudinary: CloudinarySettings = field(default_factory=CloudinarySettings)

    # Base URL providers call back into, e.g. https://worker.example.com
    public_base_url: str = field(default_factory=lambda: os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"))
    worker_secret: str = field(default_factory=lambda: os.getenv("WORKER_SHARED_SECRET", ""))
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))

    @classmethod
    def from_env(cls) -> "Settings":
        return cls()

    def callback_url(self, provider: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/callbacks/{provider}"
