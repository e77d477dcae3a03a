from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from contextlib import aclosing

from .config import ConnectionConfig
from .constants import LDAP_PAGE_SIZE
from .enums import SessionState
from .errors import (
    BindError,
    ConfigurationError,
    ConnectError,
    SearchError,
    SessionClosedError,
)
from .ldap import Referral, SearchDone, SearchEntry, SearchOutcome, SearchRequest
from .logging import (
    audit_logger,
    correlation_id_var,
    ensure_correlation_context,
    performance_log,
)
from .transport import Ldap3Transport, LdapTransport

logger = logging.getLogger(__name__)

OnEntry = Callable[[SearchEntry], Awaitable[None] | None]


class LdapSession:
    """
    One bind and one search against one directory server.

    The session owns its transport from the connect until it is closed, and
    the transport is closed on every path out of `execute`, exactly once.
    Connect, bind and search failures are returned as a failed
    `SearchOutcome`, never retried. Configuration errors are raised before
    anything touches the network.

    The configured timeout bounds the connect, the bind and every page
    round-trip of the search, each on their own.
    """

    def __init__(
        self,
        transport: LdapTransport | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        page_size: int = LDAP_PAGE_SIZE,
    ) -> None:
        self._transport = transport if transport is not None else Ldap3Transport()
        self._environ = environ
        self._page_size = page_size
        self.state = SessionState.IDLE
        self.history = [SessionState.IDLE]
        self.entry_count = 0
        self.referrals: list[Referral] = []

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    async def execute(
        self,
        config: ConnectionConfig,
        request: SearchRequest,
        on_entry: OnEntry,
    ) -> SearchOutcome:
        """
        Binds and searches, and calls `on_entry` for each entry in the
        order the server returned them. A coroutine returned from `on_entry`
        is awaited before the next entry is fetched.

        Entries delivered before a failure stay delivered, the returned
        outcome then has status error and the number of entries delivered.
        """
        if self.state == SessionState.CLOSED:
            raise SessionClosedError("Session is closed")
        if self.state != SessionState.IDLE:
            raise RuntimeError(f"Session is already running ({self.state.value})")

        with ensure_correlation_context():
            return await self._execute(config, request, on_entry)

    @performance_log(id_param=1)
    async def _execute(
        self,
        config: ConnectionConfig,
        request: SearchRequest,
        on_entry: OnEntry,
    ) -> SearchOutcome:
        try:
            config.validate(self._environ)
            timeout_ms = config.resolved_timeout(self._environ)
        except ConfigurationError:
            logger.info("Invalid configuration for connection '%s'", config.name)
            self._transition(SessionState.FAILED)
            self._transition(SessionState.CLOSED)
            raise

        timeout_sec = timeout_ms / 1000 if timeout_ms else None

        try:
            await self._connect(config, timeout_sec)
            await self._bind(config, timeout_sec)
            await self._search(config, request, on_entry, timeout_sec)
        except (ConnectError, BindError, SearchError) as e:
            logger.info("Search against '%s' failed: %s", config, e)
            self._transition(SessionState.FAILED)
            outcome = SearchOutcome.failure(e, self.entry_count, self.referrals)
        except BaseException:
            # Errors from the callback, and cancellation, are not ours
            # to turn into an outcome.
            self._transition(SessionState.FAILED)
            raise
        else:
            self._transition(SessionState.COMPLETED)
            outcome = SearchOutcome.success(self.entry_count, self.referrals)
        finally:
            await self._close()

        _audit(config, request, outcome)
        return outcome

    async def _connect(
        self, config: ConnectionConfig, timeout_sec: float | None
    ) -> None:
        self._transition(SessionState.CONNECTING)
        url = config.endpoint_url(self._environ)
        logger.debug("Connecting to %s", url)
        try:
            async with asyncio.timeout(timeout_sec):
                await self._transport.connect(url, timeout_sec)
        except TimeoutError as e:
            raise ConnectError(f"Timed out connecting to {url}") from e

    async def _bind(self, config: ConnectionConfig, timeout_sec: float | None) -> None:
        bind_dn = config.resolve("bind_dn", self._environ)
        try:
            async with asyncio.timeout(timeout_sec):
                await self._transport.bind(
                    bind_dn, config.resolve("bind_password", self._environ)
                )
        except TimeoutError as e:
            raise BindError(f"Timed out binding as '{bind_dn}'") from e
        self._transition(SessionState.BOUND)

    async def _search(
        self,
        config: ConnectionConfig,
        request: SearchRequest,
        on_entry: OnEntry,
        timeout_sec: float | None,
    ) -> None:
        self._transition(SessionState.SEARCHING)
        base = (
            request.base_dn
            if request.base_dn is not None
            else config.resolve("base_dn", self._environ)
        )
        logger.debug(
            'Doing search with filter "%s" under "%s" against "%s"',
            request.filter,
            base,
            config,
        )

        results = self._transport.search(
            base,
            request.filter,
            request.search_attributes(),
            scope=request.scope,
            page_size=self._page_size,
        )
        async with aclosing(results):
            while True:
                try:
                    async with asyncio.timeout(timeout_sec):
                        item = await anext(results, None)
                except TimeoutError as e:
                    raise SearchError(
                        f"Timed out waiting for search results from {config}"
                    ) from e

                match item:
                    case None:
                        raise SearchError("Search ended without a completion status")
                    case SearchDone():
                        if not item.ok:
                            raise SearchError(
                                f"Search completed with status {item}",
                                item.result_code,
                            )
                        logger.debug(
                            "Search completed with %d entries", self.entry_count
                        )
                        return
                    case Referral():
                        # Referrals are not followed.
                        logger.info("Ignoring referral to %s", item)
                        self.referrals.append(item)
                    case SearchEntry():
                        result = on_entry(item)
                        if inspect.isawaitable(result):
                            await result
                        self.entry_count += 1

    async def _close(self) -> None:
        try:
            await self._transport.close()
        except Exception:
            logger.exception("Error while closing connection")
        finally:
            self._transition(SessionState.CLOSED)


async def search(
    config: ConnectionConfig,
    request: SearchRequest,
    on_entry: OnEntry,
    *,
    transport: LdapTransport | None = None,
    environ: Mapping[str, str] | None = None,
) -> SearchOutcome:
    return await LdapSession(transport, environ=environ).execute(
        config, request, on_entry
    )


def _audit(
    config: ConnectionConfig, request: SearchRequest, outcome: SearchOutcome
) -> None:
    if outcome.ok:
        result = "OK"
    elif outcome.entry_count:
        result = "PARTIAL"
    else:
        result = "ERROR"

    audit_logger.info(
        "CONNECTION='%s' IDENTITY=%s FILTER='%s' ATTRIBUTES=%s "
        "NUMBER_OF_RESULTS=%d REFERRALS=%d RESULT=%s CORRELATION_ID=%s",
        config.name,
        config.identity(),
        request.filter,
        ",".join(request.attributes) or "*",
        outcome.entry_count,
        len(outcome.referrals),
        result,
        correlation_id_var.get(),
    )
