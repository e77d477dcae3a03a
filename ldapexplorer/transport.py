from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator, Callable
from typing import Any, Protocol, TypeVar

from ldap3 import ANONYMOUS, NONE, SIMPLE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException

from .constants import LDAP_SUCCESS, PAGED_RESULTS_OID
from .enums import Scope
from .errors import BindError, ConnectError, SearchError
from .ldap import Referral, SearchDone, SearchEntry

logger = logging.getLogger(__name__)

SearchItem = SearchEntry | Referral | SearchDone

T = TypeVar("T")

LDAP3_SCOPES = {
    Scope.SUB: SUBTREE,
}


class LdapTransport(Protocol):
    """
    What a session needs from an LDAP client library.

    `search` yields entries and referrals as the server returns them, and
    always ends with exactly one `SearchDone`. It can only be consumed once.
    """

    async def connect(self, url: str, timeout_sec: float | None) -> None:
        ...

    async def bind(self, bind_dn: str, password: str) -> None:
        ...

    def search(
        self,
        base: str,
        filtr: str,
        attributes: list[str],
        *,
        scope: Scope = Scope.SUB,
        page_size: int,
    ) -> AsyncGenerator[SearchItem, None]:
        ...

    async def close(self) -> None:
        ...


class Ldap3Transport:
    """
    Drives a blocking ldap3 connection from worker threads, one
    round-trip at a time, so the event loop is never blocked.

    Instances are single-use and must not be shared between sessions.
    """

    def __init__(self) -> None:
        self._connection: Connection | None = None
        self._worker: asyncio.Future[Any] | None = None

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        # A cancelled await (e.g. a timeout) doesn't stop the thread, so the
        # worker is kept around for `close` to wait on.
        worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
        self._worker = worker
        return await asyncio.shield(worker)

    def _create_connection(self, url: str, timeout_sec: float | None) -> Connection:
        server = Server(url, get_info=NONE, connect_timeout=timeout_sec)
        return Connection(
            server,
            auto_referrals=False,
            receive_timeout=timeout_sec,
            read_only=True,
            raise_exceptions=False,
        )

    def _require_connection(self) -> Connection:
        if self._connection is None:
            raise RuntimeError("Transport is not connected")
        return self._connection

    async def connect(self, url: str, timeout_sec: float | None) -> None:
        if self._connection is not None:
            raise RuntimeError("Transport is already connected")
        try:
            self._connection = self._create_connection(url, timeout_sec)
            await self._run(self._connection.open)
        except (LDAPException, OSError) as e:
            raise ConnectError(f"Could not connect to {url}: {e}") from e

    async def bind(self, bind_dn: str, password: str) -> None:
        conn = self._require_connection()
        conn.user = bind_dn or None
        conn.password = password or None
        conn.authentication = SIMPLE if bind_dn else ANONYMOUS
        try:
            bound = await self._run(conn.bind)
        except (LDAPException, OSError) as e:
            raise BindError(f"Error when binding as '{bind_dn}': {e}") from e

        if not bound:
            raise BindError(
                f"Error when binding as '{bind_dn}': {_describe_result(conn.result)}"
            )

    async def search(
        self,
        base: str,
        filtr: str,
        attributes: list[str],
        *,
        scope: Scope = Scope.SUB,
        page_size: int,
    ) -> AsyncGenerator[SearchItem, None]:
        conn = self._require_connection()
        cookie: bytes | None = None
        page_number = 0
        while True:
            page_number += 1
            try:
                items, result = await self._run(
                    _search_page,
                    conn,
                    base,
                    filtr,
                    attributes,
                    LDAP3_SCOPES[scope],
                    page_size,
                    cookie,
                )
            except (LDAPException, OSError) as e:
                raise SearchError(f"Error during search: {e}") from e

            logger.debug("Page %d returned %d items", page_number, len(items))
            for item in items:
                yield item

            result_code = result.get("result", LDAP_SUCCESS)
            cookie = _get_paged_cookie(result)
            if result_code != LDAP_SUCCESS or not cookie:
                yield SearchDone(
                    result_code,
                    result.get("description") or "",
                    result.get("message") or "",
                )
                return

    async def close(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            if not worker.done():
                logger.debug("Waiting for unfinished round-trip before closing")
            # Its outcome no longer matters, only that the connection
            # isn't in use when it is unbound.
            with contextlib.suppress(Exception):
                await asyncio.shield(worker)

        conn, self._connection = self._connection, None
        if conn is None or conn.closed:
            return
        # Unbinding also closes the socket.
        await asyncio.to_thread(conn.unbind)


def _search_page(
    conn: Connection,
    base: str,
    filtr: str,
    attributes: list[str],
    scope: str,
    page_size: int,
    cookie: bytes | None,
) -> tuple[list[SearchItem], dict[str, Any]]:
    conn.search(
        base,
        filtr,
        search_scope=scope,
        attributes=attributes,
        paged_size=page_size,
        paged_cookie=cookie,
    )
    items: list[SearchItem] = []
    for response in conn.response or []:
        if response.get("type") == "searchResEntry":
            items.append(
                SearchEntry.create(
                    response["dn"],
                    response.get("raw_attributes") or response.get("attributes", {}),
                )
            )
        elif response.get("type") == "searchResRef":
            items.append(Referral(list(response.get("uri", []))))
    return items, dict(conn.result or {})


def _get_paged_cookie(result: dict[str, Any]) -> bytes | None:
    try:
        cookie = result["controls"][PAGED_RESULTS_OID]["value"]["cookie"]
    except (KeyError, TypeError):
        return None
    return cookie or None


def _describe_result(result: dict[str, Any] | None) -> str:
    if not result:
        return "no result from server"
    description = result.get("description") or "unknown error"
    message = result.get("message")
    return f"{description}: {message}" if message else description
