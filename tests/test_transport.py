from __future__ import annotations

import threading
import time
from typing import Any

import pytest
from ldap3 import MOCK_SYNC, Connection, Server

from ldapexplorer import transport as transport_module
from ldapexplorer.config import ConnectionConfig
from ldapexplorer.enums import SessionState
from ldapexplorer.errors import BindError, ConnectError
from ldapexplorer.ldap import SearchDone, SearchEntry, SearchRequest
from ldapexplorer.session import LdapSession
from ldapexplorer.transport import (
    Ldap3Transport,
    _describe_result,
    _get_paged_cookie,
    _search_page,
)
from tests.testlib import EntryRecorder

ADMIN_DN = "cn=admin,dc=example,dc=com"

PEOPLE = ["Alice", "Bob", "Carol", "Dave", "Eve"]


class MockLdap3Transport(Ldap3Transport):
    """An ldap3 transport against ldap3's in-memory directory"""

    def __init__(self) -> None:
        super().__init__()
        self.urls: list[str] = []
        self.connection: Connection | None = None

    def _create_connection(self, url: str, timeout_sec: float | None) -> Connection:
        self.urls.append(url)
        conn = Connection(
            Server("mock_server"),
            client_strategy=MOCK_SYNC,
            auto_referrals=False,
            raise_exceptions=False,
        )
        conn.strategy.add_entry(
            ADMIN_DN,
            {
                "objectClass": ["organizationalRole"],
                "cn": ["admin"],
                "userPassword": "secret",
            },
        )
        for cn in PEOPLE:
            conn.strategy.add_entry(
                f"cn={cn},ou=people,dc=example,dc=com",
                {
                    "objectClass": ["person"],
                    "cn": [cn],
                    "mail": [f"{cn.lower()}@example.com"],
                },
            )
        self.connection = conn
        return conn


class SlowConnection:
    """Stands in for an ldap3 connection whose round-trips take a while"""

    def __init__(self, slow_in: str, delay: float = 0.3) -> None:
        self.slow_in = slow_in
        self.delay = delay
        self.closed = True
        self.result: dict[str, Any] = {}
        self.events: list[str] = []
        self._lock = threading.Lock()

    def _record(self, event: str) -> None:
        with self._lock:
            self.events.append(event)

    def _maybe_wait(self, step: str) -> None:
        if self.slow_in == step:
            time.sleep(self.delay)

    def open(self) -> None:
        self._record("open:start")
        self._maybe_wait("open")
        self.closed = False
        self._record("open:end")

    def bind(self) -> bool:
        self._record("bind:start")
        self._maybe_wait("bind")
        self._record("bind:end")
        return True

    def unbind(self) -> None:
        self._record("unbind")
        self.closed = True


class SlowLdap3Transport(Ldap3Transport):
    def __init__(self, connection: SlowConnection) -> None:
        super().__init__()
        self.connection = connection

    def _create_connection(self, url: str, timeout_sec: float | None) -> Any:
        return self.connection


@pytest.mark.parametrize(
    ("slow_in", "expected_error"),
    [("open", ConnectError), ("bind", BindError)],
)
async def test_timed_out_round_trip_is_finished_before_unbinding(
    request_people: SearchRequest, slow_in: str, expected_error: type[Exception]
) -> None:
    config = ConnectionConfig(name="slow", host="localhost", timeout="50")
    connection = SlowConnection(slow_in)
    session = LdapSession(SlowLdap3Transport(connection))

    outcome = await session.execute(config, request_people, EntryRecorder())

    assert isinstance(outcome.error, expected_error)
    assert "Timed out" in (outcome.detail or "")
    # The connection that was opened after the timeout still gets closed,
    # and never while another thread is using it.
    assert connection.closed
    assert connection.events.count("unbind") == 1
    assert connection.events[-1] == "unbind"
    assert session.state == SessionState.CLOSED


async def test_search_against_directory(
    config: ConnectionConfig,
    request_people: SearchRequest,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    pages: list[bytes | None] = []

    def counting_search_page(*args: Any) -> Any:
        pages.append(args[-1])
        return _search_page(*args)

    monkeypatch.setattr(transport_module, "_search_page", counting_search_page)

    transport = MockLdap3Transport()
    recorder = EntryRecorder()
    # A small page size, so the search takes several round-trips
    session = LdapSession(transport, page_size=2)

    outcome = await session.execute(config, request_people, recorder)

    assert outcome.ok, outcome.detail
    assert len(pages) > 1
    # Only the first page is asked for without a cookie
    assert pages[0] is None
    assert all(pages[1:])
    assert transport.urls == ["ldap://localhost:389"]
    people = {entry.dn: entry for entry in recorder.entries}
    assert set(people) == {
        f"cn={cn},ou=people,dc=example,dc=com" for cn in PEOPLE
    }
    assert outcome.entry_count == len(PEOPLE)
    alice = people["cn=Alice,ou=people,dc=example,dc=com"]
    assert alice.values("mail") == ["alice@example.com"]
    assert session.state == SessionState.CLOSED
    assert transport.connection is not None
    assert transport.connection.closed


async def test_wrong_password(request_people: SearchRequest) -> None:
    config = ConnectionConfig(
        name="example",
        host="localhost",
        bind_dn=ADMIN_DN,
        bind_password="wrong",
        base_dn="dc=example,dc=com",
    )
    transport = MockLdap3Transport()
    recorder = EntryRecorder()

    outcome = await LdapSession(transport).execute(config, request_people, recorder)

    assert isinstance(outcome.error, BindError)
    assert ADMIN_DN in (outcome.detail or "")
    assert recorder.entries == []
    assert transport.connection is not None
    assert transport.connection.closed


async def test_search_stream_ends_with_status() -> None:
    transport = MockLdap3Transport()
    await transport.connect("ldap://localhost:389", None)
    await transport.bind(ADMIN_DN, "secret")

    items = [
        item
        async for item in transport.search(
            "dc=example,dc=com", "(cn=Alice)", ["cn"], page_size=10
        )
    ]
    await transport.close()
    # Closing twice is fine
    await transport.close()

    assert isinstance(items[-1], SearchDone)
    assert items[-1].ok
    assert [item.dn for item in items if isinstance(item, SearchEntry)] == [
        "cn=Alice,ou=people,dc=example,dc=com"
    ]


async def test_connect_refused() -> None:
    transport = Ldap3Transport()

    with pytest.raises(ConnectError, match="Could not connect"):
        await transport.connect("ldap://127.0.0.1:1", 1.0)

    await transport.close()


async def test_not_connected() -> None:
    with pytest.raises(RuntimeError):
        await Ldap3Transport().bind(ADMIN_DN, "secret")


def test_get_paged_cookie() -> None:
    result = {
        "result": 0,
        "controls": {
            "1.2.840.113556.1.4.319": {"value": {"size": 0, "cookie": b"\x01\x02"}}
        },
    }
    assert _get_paged_cookie(result) == b"\x01\x02"

    result["controls"]["1.2.840.113556.1.4.319"]["value"]["cookie"] = b""
    assert _get_paged_cookie(result) is None
    assert _get_paged_cookie({"result": 0}) is None
    assert _get_paged_cookie({"result": 0, "controls": None}) is None


def test_describe_result() -> None:
    assert _describe_result(None) == "no result from server"
    assert _describe_result({"description": "invalidCredentials", "message": ""}) == (
        "invalidCredentials"
    )
    assert (
        _describe_result(
            {"description": "invalidCredentials", "message": "80090308: LdapErr"}
        )
        == "invalidCredentials: 80090308: LdapErr"
    )
