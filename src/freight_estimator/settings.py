from __future__ import annotations
import logging
from pydantic_settings import BaseSettings
from pydantic import Field
from urllib.parse import quote_plus, unquote, urlsplit, urlunsplit

logger = logging.getLogger("freight-api")


def _with_encoded_password(url: str) -> str:
    """Percent-encode the password of a DSN so ``@`` or ``:`` in it survive parsing."""
    parts = urlsplit(url)
    if not parts.password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{parts.username}:{quote_plus(unquote(parts.password))}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class Settings(BaseSettings):
    # Either a full DATABASE_URL or the PG* parts.
    database_url: str | None = Field(default=None, alias="DATABASE_URL")

    pg_host: str | None = Field(default=None, alias="PGHOST")
    pg_port: int = Field(default=5432, alias="PGPORT")
    pg_user: str | None = Field(default=None, alias="PGUSER")
    pg_password: str | None = Field(default=None, alias="PGPASSWORD")
    pg_db: str | None = Field(default=None, alias="PGDATABASE")

    request_timeout: int = Field(default=30, alias="REQUEST_TIMEOUT")
    index_fetch_timeout: float = Field(default=20.0, alias="INDEX_FETCH_TIMEOUT")
    index_catalog_path: str | None = Field(default=None, alias="INDEX_CATALOG_PATH")
    page_search_enabled: bool = Field(default=True, alias="PAGE_SEARCH_ENABLED")
    # Comma-separated market report pages scanned when an index source comes back empty
    page_search_urls: str = Field(default="", alias="PAGE_SEARCH_URLS")
    page_cache_ttl: int = Field(default=900, alias="PAGE_CACHE_TTL")

    min_reliability: float = Field(default=0.4, alias="MIN_RELIABILITY")
    max_reliability: float = Field(default=1.0, alias="MAX_RELIABILITY")

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            parts = urlsplit(self.database_url)
            logger.info(
                f"DB target → user={parts.username} host={parts.hostname} "
                f"port={parts.port} db={parts.path.lstrip('/')} (DATABASE_URL)"
            )
            return _with_encoded_password(self.database_url)

        if self.pg_host and self.pg_user and self.pg_password and self.pg_db:
            logger.info(f"DB target → user={self.pg_user} host={self.pg_host} port={self.pg_port} db={self.pg_db} (PG*)")
            return (
                f"postgresql+psycopg://{quote_plus(self.pg_user)}:{quote_plus(self.pg_password)}"
                f"@{self.pg_host}:{self.pg_port}/{self.pg_db}?sslmode=require"
            )

        raise RuntimeError("DATABASE_URL or PG* vars must be set")

    @property
    def page_search_url_list(self) -> list[str]:
        return [u.strip() for u in self.page_search_urls.split(",") if u.strip()]


settings = Settings()
