import pytest

from ldapexplorer.config import ConnectionConfig
from ldapexplorer.ldap import SearchRequest
from tests.testlib import OK, FakeTransport, person


@pytest.fixture
def config() -> ConnectionConfig:
    return ConnectionConfig(
        name="example",
        protocol="ldap",
        host="localhost",
        port="389",
        bind_dn="cn=admin,dc=example,dc=com",
        bind_password="secret",
        base_dn="dc=example,dc=com",
        timeout="5000",
    )


@pytest.fixture
def request_people() -> SearchRequest:
    return SearchRequest("(objectClass=person)", ["cn", "mail"])


@pytest.fixture
def two_people_transport() -> FakeTransport:
    return FakeTransport([person("Alice"), person("Bob"), OK], password="secret")
