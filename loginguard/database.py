from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from supabase import Client, create_client

from loginguard.errors import DatabaseError

logger = logging.getLogger("loginguard.database")


@dataclass(frozen=True)
class SupabaseConfig:
    url: str
    service_role_key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        url = os.getenv("SUPABASE_URL", "").strip()
        service_role_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()

        if not url or not service_role_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required environment variables.")

        return cls(url=url, service_role_key=service_role_key)


class SupabaseStore:
    """Owns the Supabase client shared by every repository.

    The handle is opened once by the application lifespan and closed on
    shutdown; repositories receive the store instead of importing a client.
    """

    def __init__(self, config: SupabaseConfig) -> None:
        self._config = config
        self._client: Client | None = None

    @property
    def is_open(self) -> bool:
        return self._client is not None

    def open(self) -> "SupabaseStore":
        if self._client is None:
            try:
                self._client = create_client(self._config.url, self._config.service_role_key)
            except Exception as exc:
                raise DatabaseError(f"Failed to connect to Supabase: {exc}") from exc
            logger.info("storage_opened url=%s", self._config.url)
        return self

    def close(self) -> None:
        if self._client is None:
            return
        self._client = None
        logger.info("storage_closed url=%s", self._config.url)

    @property
    def client(self) -> Client:
        if self._client is None:
            raise DatabaseError("Storage handle is not open.")
        return self._client
