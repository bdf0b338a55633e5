import os

from pydantic import BaseModel


class Settings(BaseModel):
    """Runtime configuration, built once at startup and handed to create_app."""

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "ems"
    jwt_key: str = "jwt-dev-secret"
    token_ttl_days: int = 10
    upload_dir: str = "uploads"
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            database_name=os.getenv("DATABASE_NAME", defaults.database_name),
            jwt_key=os.getenv("JWT_KEY", defaults.jwt_key),
            token_ttl_days=int(os.getenv("TOKEN_TTL_DAYS", defaults.token_ttl_days)),
            upload_dir=os.getenv("UPLOAD_DIR", defaults.upload_dir),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            port=int(os.getenv("PORT", defaults.port)),
        )
