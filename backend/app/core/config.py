from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        protected_namespaces=(),
    )

    env: Literal["local", "prod", "test"] = Field(default="local", alias="ENV")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT")

    r2_access_key_id: str = Field(..., alias="R2_ACCESS_KEY_ID")
    r2_secret_access_key: str = Field(..., alias="R2_SECRET_ACCESS_KEY")
    r2_bucket_name: str = Field(..., alias="R2_BUCKET_NAME")
    r2_endpoint: HttpUrl = Field(..., alias="R2_ENDPOINT")
    r2_region: str = Field(default="auto", alias="R2_REGION")

    storage_backend: Literal["s3", "local"] = Field(default="s3", alias="STORAGE_BACKEND")
    local_storage_dir: str = Field(default="./storage", alias="LOCAL_STORAGE_DIR")
    metadata_source: Literal["head", "stream"] = Field(default="head", alias="METADATA_SOURCE")
    stream_chunk_size: int = Field(default=64 * 1024, alias="STREAM_CHUNK_SIZE")

    cache_backend: Literal["memory", "none"] = Field(default="memory", alias="CACHE_BACKEND")
    cache_ttl_seconds: int = Field(default=604800, alias="CACHE_TTL_SECONDS")
    cache_max_entries: int = Field(default=1024, alias="CACHE_MAX_ENTRIES")
    cache_max_object_bytes: int = Field(default=10 * 1024 * 1024, alias="CACHE_MAX_OBJECT_BYTES")
    cache_max_total_bytes: int = Field(default=256 * 1024 * 1024, alias="CACHE_MAX_TOTAL_BYTES")
    cache_vary_headers: str = Field(default="", alias="CACHE_VARY_HEADERS")
    max_parallel_cache_writes: int = Field(default=4, alias="MAX_PARALLEL_CACHE_WRITES")

    @property
    def vary_headers(self) -> tuple[str, ...]:
        names = (name.strip().lower() for name in self.cache_vary_headers.split(","))
        return tuple(name for name in names if name)


@lru_cache
def get_settings() -> Settings:
    return Settings()
