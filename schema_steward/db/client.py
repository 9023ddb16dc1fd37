"""SurrealDB client wrapper for Schema Steward.

Supports two connection modes:
  - Server (ws://, wss://, http://, https://) — the hosted store the tools run
    against. Signs in with either the service principal (DDL and writes) or
    the restricted read principal.
  - Embedded (mem://, file://) — the SDK's built-in engine. Used by tests and
    for local dry runs against an exported snapshot.

Every call goes through ``with_retry`` with a per-call timeout. Network
failures, timeouts and transaction conflicts are transient and retried;
anything the database rejects is a semantic error and raised immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from surrealdb import AsyncSurreal
from websockets.exceptions import ConnectionClosed

from ..errors import SemanticDBError, StewardError, TransientDBError
from ..retry import with_retry

if TYPE_CHECKING:
    from ..config import StewardConfig

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "transaction conflict",
    "io error",
    "timed out",
    "connection",
    "temporarily unavailable",
    "abnormal closure",
    "close frame",
)


def classify_error(exc: BaseException) -> StewardError:
    """Map an SDK or transport exception onto the Steward error taxonomy."""
    if isinstance(exc, StewardError):
        return exc
    # TimeoutError and ConnectionError are both OSError subclasses
    if isinstance(exc, OSError | ConnectionClosed):
        return TransientDBError(str(exc) or type(exc).__name__)
    message = str(exc)
    if any(marker in message.lower() for marker in _TRANSIENT_MARKERS):
        return TransientDBError(message)
    return SemanticDBError(message or type(exc).__name__)


class StewardDatabase:
    """Async SurrealDB client with bounded retries and per-call timeouts."""

    def __init__(
        self,
        url: str = "mem://",
        user: str = "",
        password: str = "",
        namespace: str = "steward",
        database: str = "main",
        *,
        timeout: float = 30.0,
        retries: int = 3,
        backoff: float = 0.5,
    ) -> None:
        self._url = url
        self._user = user
        self._password = password
        self._namespace = namespace
        self._database = database
        self._timeout = timeout
        self._retries = retries
        self._backoff = backoff
        self._db: AsyncSurreal | None = None

    @classmethod
    def from_url(cls, url: str, user: str = "", password: str = "", **kwargs: Any) -> StewardDatabase:
        """Create a client from a SurrealDB URL."""
        return cls(url=url, user=user, password=password, **kwargs)

    @classmethod
    def in_memory(cls, name: str = "", **kwargs: Any) -> StewardDatabase:
        """Create an in-memory client (for testing)."""
        url = f"mem://{name}" if name else "mem://"
        return cls(url=url, **kwargs)

    @classmethod
    def from_config(cls, config: StewardConfig, *, read_only: bool = False) -> StewardDatabase:
        """Build a client for the service principal, or the read principal."""
        if read_only and config.has_read_principal:
            user, password = config.read_user, config.read_pass
        else:
            user, password = config.service_user, config.service_pass
        return cls(
            url=config.endpoint,
            user=user,
            password=password,
            namespace=config.namespace,
            database=config.database,
            timeout=config.query_timeout,
            retries=config.max_retries,
            backoff=config.retry_backoff,
        )

    @property
    def is_server(self) -> bool:
        """True when connected to a SurrealDB server (vs embedded engine)."""
        return self._url.startswith(("ws://", "wss://", "http://", "https://"))

    @property
    def url(self) -> str:
        return self._url

    async def connect(self, timeout: float = 10.0) -> None:
        """Connect, sign in when talking to a server, and select namespace/database.

        Args:
            timeout: Max seconds to wait for connect and signin.
                     Pass 0 to disable.
        """
        async def _connect() -> None:
            await self._discard()
            self._db = AsyncSurreal(self._url)
            await self._bounded(self._db.connect(), timeout)
            if self.is_server and self._user:
                await self._bounded(
                    self._db.signin({"user": self._user, "pass": self._password}),
                    timeout,
                )
            await self._db.use(self._namespace, self._database)

        await with_retry(
            self._translated(_connect),
            attempts=self._retries,
            backoff=self._backoff,
            label=f"connect {self._url}",
        )

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _discard(self) -> None:
        """Close a handle left over from a failed connect attempt."""
        if self._db is None:
            return
        stale, self._db = self._db, None
        try:
            await stale.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring error closing stale connection: %s", exc)

    async def __aenter__(self) -> StewardDatabase:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def db(self) -> AsyncSurreal:
        """Get the underlying SurrealDB connection. Raises if not connected."""
        if self._db is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._db

    async def query(self, surql: str, params: dict[str, Any] | None = None) -> list[Any]:
        """Execute a SurrealQL statement and return its result rows.

        The SDK may return an error string instead of raising when the server
        reports a failure inside the result payload; that is detected here and
        classified like a raised exception.
        """
        async def _once() -> list[Any]:
            call = self.db.query(surql, params) if params else self.db.query(surql)
            result = await self._bounded(call, self._timeout)
            if isinstance(result, str):
                raise classify_error(RuntimeError(f"SurrealDB query error: {result}"))
            if not isinstance(result, list):
                return [result] if result is not None else []
            return result

        return await with_retry(
            self._translated(_once),
            attempts=self._retries,
            backoff=self._backoff,
            label=surql.split(" ", 2)[0] if surql else "query",
        )

    async def execute(self, statement: str, params: dict[str, Any] | None = None) -> list[Any]:
        """Escape hatch for DDL (DEFINE / REMOVE). Requires the service principal."""
        logger.info("DDL: %s", statement)
        return await self.query(statement, params)

    async def health(self) -> bool:
        """Check if the database is reachable."""
        try:
            await self.query("RETURN true")
            return True
        except StewardError:
            return False

    @staticmethod
    async def _bounded(awaitable: Any, timeout: float) -> Any:
        if timeout and timeout > 0:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        return await awaitable

    @staticmethod
    def _translated(fn: Any) -> Any:
        """Wrap ``fn`` so SDK/transport exceptions surface as Steward errors."""

        async def _call() -> Any:
            try:
                return await fn()
            except StewardError:
                raise
            except Exception as exc:
                raise classify_error(exc) from exc

        return _call
