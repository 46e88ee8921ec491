"""
Configuration module for the FleetPulse realtime core.

Centralizes all configuration settings including feature flags,
database URLs, broker tuning and attendance / SOS constants.
"""

import os
from typing import List


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes", "on")


class Config:
    """Application configuration loaded from environment variables."""

    # Feature Flags
    USE_DATABASE: bool = _env_bool("USE_DATABASE", "false")
    RELAY_ENABLED: bool = _env_bool("RELAY_ENABLED", "false")

    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./fleetpulse.db")
    SQLALCHEMY_ECHO: bool = _env_bool("SQLALCHEMY_ECHO", "false")

    # Redis Configuration
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RELAY_CHANNEL: str = os.getenv("RELAY_CHANNEL", "fleet_events")

    # Broker (server side) Configuration
    WS_SEND_TIMEOUT: float = float(os.getenv("WS_SEND_TIMEOUT", "2.0"))
    CORS_ORIGINS: List[str] = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
        if origin.strip()
    ]

    # Event channel (client side) Configuration
    WS_URL: str = os.getenv("WS_URL", "ws://localhost:8000/ws")
    API_URL: str = os.getenv("API_URL", "http://localhost:8000")
    RECONNECT_ATTEMPTS: int = int(os.getenv("RECONNECT_ATTEMPTS", "10"))
    RECONNECT_DELAY: float = float(os.getenv("RECONNECT_DELAY", "1.0"))
    RECONNECT_DELAY_MAX: float = float(os.getenv("RECONNECT_DELAY_MAX", "5.0"))

    # Attendance Configuration
    ATTENDANCE_TOKEN_TTL_MS: int = int(os.getenv("ATTENDANCE_TOKEN_TTL_MS", "300000"))

    # SOS Configuration
    GEOLOCATION_TIMEOUT: float = float(os.getenv("GEOLOCATION_TIMEOUT", "5.0"))
    FALLBACK_LATITUDE: float = float(os.getenv("FALLBACK_LATITUDE", "13.0418"))
    FALLBACK_LONGITUDE: float = float(os.getenv("FALLBACK_LONGITUDE", "80.2341"))

    # Fleet registry
    FLEET_STORAGE_PATH: str = os.getenv("FLEET_STORAGE_PATH", "")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    @classmethod
    def get_config_dict(cls) -> dict:
        """Return configuration as dictionary (for debugging)."""
        return {
            "USE_DATABASE": cls.USE_DATABASE,
            "RELAY_ENABLED": cls.RELAY_ENABLED,
            "REDIS_URL": cls.REDIS_URL.replace("//", "//***@") if "@" in cls.REDIS_URL else cls.REDIS_URL,
            "DATABASE_URL": cls.DATABASE_URL.replace("//", "//***@") if "@" in cls.DATABASE_URL else cls.DATABASE_URL,
            "WS_SEND_TIMEOUT": cls.WS_SEND_TIMEOUT,
            "RECONNECT_ATTEMPTS": cls.RECONNECT_ATTEMPTS,
            "ATTENDANCE_TOKEN_TTL_MS": cls.ATTENDANCE_TOKEN_TTL_MS,
            "GEOLOCATION_TIMEOUT": cls.GEOLOCATION_TIMEOUT,
            "LOG_LEVEL": cls.LOG_LEVEL,
        }


# Global configuration instance
config = Config()
