"""Configuration management using Pydantic settings"""

import platform
import os
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import Optional


def get_default_storage_path() -> str:
    """
    Get OS-specific default storage path for PolyLingo.

    Returns:
        - macOS: ~/Library/Application Support/PolyLingo
        - Linux: ~/.local/share/polylingo
        - Windows: %APPDATA%/PolyLingo
    """
    system = platform.system()
    home = Path.home()

    if system == "Darwin":  # macOS
        return str(home / "Library" / "Application Support" / "PolyLingo")
    elif system == "Windows":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return str(Path(appdata) / "PolyLingo")
        return str(home / "AppData" / "Roaming" / "PolyLingo")
    else:  # Linux and others
        # Follow XDG Base Directory specification
        xdg_data = os.environ.get("XDG_DATA_HOME")
        if xdg_data:
            return str(Path(xdg_data) / "polylingo")
        return str(home / ".local" / "share" / "polylingo")


class Settings(BaseSettings):
    """Application settings"""

    # production | sandbox | development
    ENVIRONMENT: str = "production"

    # Forces sandbox receipts (TestFlight builds)
    IAP_USE_SANDBOX: bool = False
    PLATFORM: str = "ios"

    # Receipt validation backend
    VALIDATION_API_BASE_URL: str = "https://api.polylingo.app"
    IAP_API_SECRET_KEY: Optional[str] = None
    VALIDATION_TIMEOUT_SECONDS: float = 10.0

    # Reconciliation
    RESTORE_TIMEOUT_SECONDS: float = 30.0
    RECONCILE_THROTTLE_SECONDS: float = 120.0
    INIT_RETRY_DELAY_SECONDS: float = 1.0

    # Remote subscription/usage database
    SUPABASE_URL: Optional[str] = None
    SUPABASE_ANON_KEY: Optional[str] = None

    # Local storage
    STORAGE_DIR: str = get_default_storage_path()

    # Anonymous device metering
    DEVICE_DAILY_LIMIT: float = 100.0
    DEVICE_USAGE_RETENTION_DAYS: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def use_sandbox_validation(self) -> bool:
        """Whether receipts should be checked against the sandbox server"""
        if self.IAP_USE_SANDBOX:
            return True
        return self.ENVIRONMENT.lower() in ("development", "sandbox")

    @property
    def remote_sync_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_ANON_KEY)


# Global settings instance
settings = Settings()
