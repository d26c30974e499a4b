import os
from typing import List, Optional
from urllib.parse import quote_plus


class AppConfig:
    """Runtime configuration read from the environment (and .env)."""

    def __init__(self) -> None:
        self.mongo_url: Optional[str] = os.environ.get("MONGO_URL") or None
        self.mongo_host: str = os.environ.get("MONGO_HOST", "localhost")
        self.mongo_port: int = int(os.environ.get("MONGO_PORT", "27017"))
        self.mongo_database: str = os.environ.get("MONGO_DATABASE", "medication-kiosk")
        self.mongo_username: Optional[str] = os.environ.get("MONGO_USERNAME") or None
        self.mongo_password: Optional[str] = os.environ.get("MONGO_PASSWORD") or None
        self.host: str = os.environ.get("HOST", "0.0.0.0")
        self.port: int = int(os.environ.get("PORT", "5177"))
        self.log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
        self.frontend_dist: Optional[str] = os.environ.get("FRONTEND_DIST") or None

        cors = os.environ.get("CORS_ORIGINS", "*")
        if cors.strip() == "*":
            self.cors_origins: List[str] = ["*"]
        else:
            self.cors_origins = [origin.strip() for origin in cors.split(",") if origin.strip()]

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls()


def build_mongo_uri(config: AppConfig) -> str:
    if config.mongo_url:
        return config.mongo_url
    host = f"{config.mongo_host}:{config.mongo_port}"
    if config.mongo_username and config.mongo_password:
        user = quote_plus(config.mongo_username)
        password = quote_plus(config.mongo_password)
        return f"mongodb://{user}:{password}@{host}/{config.mongo_database}?authSource=admin"
    return f"mongodb://{host}/{config.mongo_database}"
