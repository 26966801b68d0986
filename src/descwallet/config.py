"""
Configuration management using pydantic and pydantic-settings.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from descwallet.constants import DEFAULT_STOP_GAP
from descwallet.models import Network


class EsploraConfig(BaseModel):
    kind: Literal["esplora"] = "esplora"
    base_url: str
    proxy: str | None = None
    # Maximum number of parallel requests; 1 disables batching
    concurrency: int | None = Field(default=None, ge=1)
    stop_gap: int = Field(default=DEFAULT_STOP_GAP, ge=1)
    timeout: float | None = Field(default=30.0, gt=0)


class RpcAuth(BaseModel):
    username: str | None = None
    password: str | None = None
    cookie: Path | None = None

    @model_validator(mode="after")
    def _one_method(self) -> RpcAuth:
        if self.cookie is not None and (self.username or self.password):
            raise ValueError("Use either a cookie file or username/password, not both")
        return self

    def credentials(self) -> tuple[str, str] | None:
        if self.cookie is not None:
            user, _, password = self.cookie.read_text().strip().partition(":")
            return user, password
        if self.username is not None:
            return self.username, self.password or ""
        return None


class RpcSyncParams(BaseModel):
    start_script_count: int = Field(default=100, ge=1)
    start_time: int = Field(default=0, ge=0)
    force_start_time: bool = False
    poll_rate_sec: int = Field(default=3, ge=1)


class RpcConfig(BaseModel):
    kind: Literal["rpc"] = "rpc"
    url: str
    auth: RpcAuth = Field(default_factory=RpcAuth)
    network: Network = Network.REGTEST
    wallet_name: str = "descwallet"
    sync_params: RpcSyncParams | None = None
    timeout: float = Field(default=30.0, gt=0)


BlockchainConfig = Annotated[EsploraConfig | RpcConfig, Field(discriminator="kind")]


class MemoryConfig(BaseModel):
    kind: Literal["memory"] = "memory"


class SqliteConfig(BaseModel):
    kind: Literal["sqlite"] = "sqlite"
    path: Path


DatabaseConfig = Annotated[MemoryConfig | SqliteConfig, Field(discriminator="kind")]


class Settings(BaseSettings):
    """CLI defaults, read from ``DESCWALLET_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="DESCWALLET_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Network = Network.TESTNET
    esplora_url: str | None = None
    rpc_url: str | None = None
    rpc_user: str | None = None
    rpc_password: str | None = None
    rpc_cookie: Path | None = None
    database_path: Path | None = None
    stop_gap: int = Field(default=DEFAULT_STOP_GAP, ge=1)

    log_level: str = "INFO"

    def blockchain_config(self) -> EsploraConfig | RpcConfig | None:
        if self.esplora_url:
            return EsploraConfig(base_url=self.esplora_url, stop_gap=self.stop_gap)
        if self.rpc_url:
            auth = RpcAuth(
                username=self.rpc_user, password=self.rpc_password, cookie=self.rpc_cookie
            )
            return RpcConfig(url=self.rpc_url, auth=auth, network=self.network)
        return None

    def database_config(self) -> MemoryConfig | SqliteConfig:
        if self.database_path is not None:
            return SqliteConfig(path=self.database_path)
        return MemoryConfig()


def get_settings() -> Settings:
    return Settings()
