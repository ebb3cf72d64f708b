"""Settings loaded from the environment (and an optional ``.env`` file)."""

from __future__ import annotations

from typing import Literal
from urllib.parse import quote

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BrokerSettings(BaseSettings):
    """RabbitMQ connection and queue settings (``RABBITMQ_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="RABBITMQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 5672
    username: str = "guest"
    password: str = "guest"
    virtual_host: str = "/"
    queue_name: str = "email_queue"
    prefetch_count: int = Field(default=10, ge=1)
    publisher_confirms: bool = True
    connect_timeout: float = Field(default=10.0, gt=0)

    @property
    def url(self) -> str:
        """AMQP URL for aio-pika."""
        user = quote(self.username, safe="")
        pwd = quote(self.password, safe="")
        vhost = quote(self.virtual_host, safe="")
        return f"amqp://{user}:{pwd}@{self.host}:{self.port}/{vhost}"


class SmtpSettings(BaseSettings):
    """SMTP transport settings (``SMTP_*``).

    Authentication is skipped unless both username and password are set.
    """

    model_config = SettingsConfigDict(
        env_prefix="SMTP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    from_email: str = ""
    from_name: str = ""
    # "starttls" upgrades a plain connection; "tls" is implicit TLS (port 465).
    tls_mode: Literal["none", "starttls", "tls"] = "none"
    validate_certs: bool = True

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and bool(self.password)


class DispatchSettings(BaseSettings):
    """Top-level worker settings (``DISPATCH_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    delivery_timeout: float = Field(default=30.0, gt=0)
    concurrency: int = Field(default=1, ge=1)
    shutdown_timeout: float = Field(default=10.0, ge=0)

    # Redelivery cap; None keeps requeueing transient failures forever.
    max_attempts: int | None = Field(default=None, ge=1)
    retry_base_delay: float = Field(default=0.0, ge=0)
    retry_max_delay: float = Field(default=60.0, ge=0)
    dead_letter_queue: str | None = None

    log_level: str = "INFO"
    log_json: bool = False

    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
