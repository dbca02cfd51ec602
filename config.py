import os
from pathlib import Path
from typing import List, Optional

from schemas import AdminCredential


class Settings:
    """Runtime configuration, read from the environment."""

    def __init__(self, data_dir: Optional[str] = None) -> None:
        self.data_dir = Path(data_dir or os.getenv("DATA_DIR", "./data"))
        self.db_path = self.data_dir / "db.json"
        self.uploads_dir = self.data_dir / "uploads"
        self.secret_key = os.getenv("SECRET_KEY", "change-this-secret")
        self.admin_email = os.getenv("ADMIN_EMAIL", "admin@example.com")
        self.admin_password = os.getenv("ADMIN_PASSWORD", "admin")
        self.cors_origins: List[str] = [
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ]
        self.port = int(os.getenv("PORT", 8000))
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def seed_admin(self) -> AdminCredential:
        return AdminCredential(email=self.admin_email, password=self.admin_password)
