import argparse
import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Any

import uvicorn
from fastapi import Body, Depends, FastAPI
from starlette.datastructures import MutableHeaders
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ldapexplorer import get_version, is_dev

from .config import ConnectionConfig
from .errors import ConfigurationError, ConnectionNotFoundError, LdapExplorerError
from .ldap import SearchEntry, SearchOutcome, SearchRequest
from .logging import audit_logger, correlation_context, get_log_config, performance_log
from .serialization import ldapexplorer_serialization
from .session import LdapSession
from .store import ConnectionStore
from .transport import Ldap3Transport, LdapTransport

logger = logging.getLogger(__name__)

# Entries waiting to be written to a slow client. When full, the
# search waits before fetching more entries from the server.
STREAM_QUEUE_SIZE = 100


async def handle_configuration_error(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, ConfigurationError)
    logger.info("Returning configuration error: %s", exc)
    return Response(
        content=json.dumps({"error": exc.args[0]}, ensure_ascii=False),
        status_code=404 if isinstance(exc, ConnectionNotFoundError) else 400,
        media_type="application/json",
    )


async def handle_exception(request: Request, exc: Exception) -> Response:
    logger.exception("An exception occured:")
    return Response(
        content=json.dumps({"error": "An unknown error occured"}, ensure_ascii=False),
        status_code=500,
        media_type="application/json",
        # Stuff caught by a general `Exception` handler
        # bubbles all the way up to Uvicorn, which closes
        # the connection after the response is sent. So
        # add a matching Connection header.
        headers={"Connection": "close"},
    )


class CorrelationMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            return await self.app(scope, receive, send)
        with correlation_context() as correlation_id:

            async def send_with_extra_headers(message: Message) -> None:
                if message["type"] == "http.response.start":
                    MutableHeaders(scope=message).append(
                        "Correlation-Id", str(correlation_id)
                    )

                await send(message)

            await self.app(scope, receive, send_with_extra_headers)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    audit_logger.info("## Starting version %s ##", app.version)
    app.state.dev = is_dev()
    app.state.store = ConnectionStore.from_env()
    app.state.transport_factory = Ldap3Transport
    yield


def get_store(request: Request) -> ConnectionStore:
    return request.app.state.store


def get_transport_factory(request: Request) -> Callable[[], LdapTransport]:
    return request.app.state.transport_factory


app = FastAPI(
    middleware=[Middleware(CorrelationMiddleware)],
    lifespan=lifespan,
    title="LDAP Explorer",
    version=get_version(),
    exception_handlers={
        ConfigurationError: handle_configuration_error,
        Exception: handle_exception,
    },
)


@app.get("/api/connections")
@performance_log()
async def connections_endpoint(
    store: Annotated[ConnectionStore, Depends(get_store)],
) -> Response:
    return Response(
        content=json.dumps(
            store.list_all(), ensure_ascii=False, default=ldapexplorer_serialization
        ),
        status_code=200,
        media_type="application/json",
    )


@app.post("/api/connections/{name}/search")
async def search_endpoint(
    name: str,
    filter: Annotated[str, Body()],
    store: Annotated[ConnectionStore, Depends(get_store)],
    transport_factory: Annotated[
        Callable[[], LdapTransport], Depends(get_transport_factory)
    ],
    attributes: Annotated[list[str] | str | None, Body()] = None,
    base_dn: Annotated[str | None, Body(alias="baseDN")] = None,
) -> StreamingResponse:
    """
    Streams one JSON line per entry as the entries arrive, and
    then a last line with the outcome of the search.
    """
    config = store.find_by_name(name)
    # Fail with a proper status code while we still can,
    # the status is sent before the first entry.
    config.validate()
    search_request = SearchRequest.create(filter, attributes, base_dn)

    return StreamingResponse(
        _stream_search(LdapSession(transport_factory()), config, search_request),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-store"},
    )


async def _stream_search(
    session: LdapSession, config: ConnectionConfig, search_request: SearchRequest
) -> AsyncIterator[str]:
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=STREAM_QUEUE_SIZE)

    async def on_entry(entry: SearchEntry) -> None:
        await queue.put({"type": "entry", **ldapexplorer_serialization(entry)})

    async def run() -> None:
        try:
            outcome = await session.execute(config, search_request, on_entry)
        except Exception:
            logger.exception("Unexpected error during search")
            outcome = SearchOutcome.failure(
                LdapExplorerError("An unknown error occured"), session.entry_count
            )
        await queue.put({"type": "outcome", **ldapexplorer_serialization(outcome)})

    task = asyncio.create_task(run())
    try:
        while True:
            message = await queue.get()
            yield json.dumps(message, ensure_ascii=False) + "\n"
            if message["type"] == "outcome":
                break
    finally:
        # The client went away, the session closes its connection on cancel.
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)


def run() -> None:
    parser = argparse.ArgumentParser(description="LDAP Explorer API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", default="7001")
    parser.add_argument("--log-level")
    parser.add_argument("--log-files")

    args = parser.parse_args()

    if args.log_level:
        log_level = getattr(logging, args.log_level)
    elif is_dev():
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    uvicorn.run(
        "ldapexplorer.web:app",
        port=int(args.port),
        host=args.host,
        log_level=log_level,
        reload=is_dev(),
        log_config=get_log_config(log_level, args.log_files),
    )
