from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv
from typing import Optional

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "CMS Plugin Runtime"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./data/cms.db"

    # Admin API guard (unset = open, for local development)
    admin_token: Optional[str] = None

    # Plugin discovery
    plugin_modules: list[str] = ["cms_core.plugins.seo_plugin", "cms_core.plugins.social_plugin"]
    plugin_directory: Optional[str] = None
    plugin_entry_point_group: Optional[str] = None

    # Namespace roots for plugin routes
    admin_route_prefix: str = "/admin"
    frontend_route_prefix: str = "/plugins"

    # Hook bus
    default_hook_priority: int = 10

    # Webhook delivery
    webhook_max_retries: int = 3
    webhook_backoff_base: float = 1.0
    webhook_backoff_cap: float = 30.0
    webhook_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


settings = Settings()
