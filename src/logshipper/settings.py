from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

from .policy import BackoffPolicy


class BackoffSettings(BaseModel):
    """Reconnect backoff, in seconds."""

    initial: float = Field(0.5, ge=0)
    max: float = Field(30.0, ge=0)
    jitter: float = Field(0.25, ge=0, le=1)
    multiplier: float = Field(2.0, ge=1)

    @model_validator(mode="after")
    def _max_not_below_initial(self):
        if self.max < self.initial:
            raise ValueError("reconnect_backoff.max must be >= reconnect_backoff.initial")
        return self

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial=self.initial, max=self.max, jitter=self.jitter, multiplier=self.multiplier
        )


class ShipperSettings(BaseSettings):
    """Shipper configuration, read from ``LOGSHIPPER_*`` env vars or ``.env``.

    Nested backoff fields use a double underscore, e.g.
    ``LOGSHIPPER_RECONNECT_BACKOFF__MAX=60``.
    """

    server_spec: str
    queue_capacity: int = Field(1000, gt=0)
    overflow_policy: Literal["reject", "evict-oldest"] = "evict-oldest"
    submit_timeout: float = Field(0.0, ge=0)
    reconnect_backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    resolution_interval: float = Field(60.0, gt=0)
    connect_timeout: float = Field(5.0, gt=0)
    write_timeout: float = Field(10.0, gt=0)
    shutdown_timeout: float = Field(5.0, ge=0)
    max_write_retries: int = Field(1, ge=0)
    metrics_prefix: str = "logshipper"

    class Config:
        env_prefix = "LOGSHIPPER_"
        env_file = ".env"
        env_nested_delimiter = "__"
        case_sensitive = False
        frozen = True
        extra = "ignore"


@lru_cache()
def get_settings() -> ShipperSettings:
    return ShipperSettings()
