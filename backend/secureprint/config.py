from decimal import Decimal
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    data_path: Path = Path.home() / "SecurePrintLink"
    # Upload cap, enforced before the blob is written.
    max_upload_bytes: int = 20 * 1024 * 1024  # 20 MiB
    # Overrides the request-derived origin when building release links.
    public_base_url: str | None = None
    sweeper_period_seconds: int = 60
    default_expiration_minutes: int = 15
    max_expiration_minutes: int = 24 * 60
    # Existing ciphertexts were derived with this count; do not change it on a live deployment.
    pbkdf2_iterations: int = 100_000
    # Short-lived, single-use tokens that unlock the plaintext stream.
    print_token_ttl_seconds: int = 60
    print_token_rate_limit: int = 10  # per client IP per window
    print_token_rate_window_seconds: int = 60
    base_cost: Decimal = Decimal("0.10")
    api_prefix: str = "/api"
    log_level: str = "INFO"
    cors_origins: list[str] = [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
    ]

    @property
    def db_path(self) -> Path:
        return self.data_path / "secureprint.db"

    @property
    def uploads_dir(self) -> Path:
        return self.data_path / "uploads"

    model_config = {"env_prefix": "SECUREPRINT_"}


settings = Settings()
