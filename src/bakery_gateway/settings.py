from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # Externally visible base URL, only shown on the homepage
    public_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("public_url", "railway_static_url"),
    )

    # Seconds; unset means downstream calls may wait indefinitely
    downstream_timeout: float | None = None
    website_tool_enabled: bool = True

    @property
    def display_url(self) -> str:
        return (self.public_url or f"http://localhost:{self.port}").rstrip("/")


settings = Settings()
