from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any, Self

from attrs import fields, frozen
from cattrs.gen import make_dict_structure_fn, make_dict_unstructure_fn, override
from cattrs.preconf.json import make_converter

from .constants import DEFAULT_PORT, DEFAULT_PROTOCOL, DEFAULT_TIMEOUT, ENV_PREFIX
from .enums import LdapProtocol
from .errors import ConfigurationError


def resolve(raw: str, environ: Mapping[str, str] | None = None) -> str:
    """
    Expands an `env:<VARNAME>` token into the value of that variable.

    Anything else is returned unchanged. An unset variable resolves to the
    empty string, so there is no way to tell "unset" from "set to empty".
    The environment is read on every call, unless a mapping is injected.
    """
    if not raw.startswith(ENV_PREFIX):
        return raw
    _, var_name = raw.split(":", 1)
    env = os.environ if environ is None else environ
    return env.get(var_name, "")


@frozen
class ConnectionConfig:
    """
    How to reach and authenticate against one directory server.

    Every field except `name` holds either a literal or an `env:<VARNAME>`
    token, which is why port and timeout are strings.
    """

    name: str
    protocol: str = DEFAULT_PROTOCOL
    host: str = ""
    port: str = DEFAULT_PORT
    bind_dn: str = ""
    bind_password: str = ""
    base_dn: str = ""
    timeout: str = DEFAULT_TIMEOUT

    def __str__(self) -> str:
        # Used for logging.
        return self.identity()

    def resolve(self, field: str, environ: Mapping[str, str] | None = None) -> str:
        if field not in _RESOLVABLE_FIELDS:
            raise ValueError(f"Not a resolvable field: {field}")
        return resolve(getattr(self, field), environ)

    def identity(self) -> str:
        # Deliberately unresolved, so the identity doesn't change with the
        # environment.
        return (
            f"{self.protocol}://{self.bind_dn}@{self.host}:{self.port}/{self.base_dn}"
        )

    def endpoint_url(self, environ: Mapping[str, str] | None = None) -> str:
        protocol = resolve(self.protocol, environ)
        host = resolve(self.host, environ)
        port = resolve(self.port, environ)
        return f"{protocol}://{host}:{port}"

    def resolved_protocol(
        self, environ: Mapping[str, str] | None = None
    ) -> LdapProtocol:
        value = resolve(self.protocol, environ)
        try:
            return LdapProtocol(value.lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid protocol '{self.protocol}' for connection '{self.name}', "
                "expected 'ldap' or 'ldaps'"
            ) from None

    def resolved_port(self, environ: Mapping[str, str] | None = None) -> int:
        port = _parse_int(self.port, "port", self.name, environ)
        if not 0 < port < 65536:
            raise ConfigurationError(
                f"Port '{self.port}' for connection '{self.name}' is out of range"
            )
        return port

    def resolved_timeout(self, environ: Mapping[str, str] | None = None) -> int:
        """Timeout in milliseconds. Zero means no timeout."""
        timeout = _parse_int(self.timeout, "timeout", self.name, environ)
        if timeout < 0:
            raise ConfigurationError(
                f"Timeout '{self.timeout}' for connection '{self.name}' is negative"
            )
        return timeout

    def validate(self, environ: Mapping[str, str] | None = None) -> None:
        """Checks the fields that have a type beyond 'string'."""
        self.resolved_protocol(environ)
        self.resolved_port(environ)
        self.resolved_timeout(environ)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Self:
        return record_converter.structure(record, cls)

    def to_record(self) -> dict[str, str]:
        return record_converter.unstructure(self)


def _parse_int(
    raw: str, field: str, name: str, environ: Mapping[str, str] | None
) -> int:
    # The error message uses the raw value, since the resolved
    # one may come from an environment variable holding a secret.
    try:
        return int(resolve(raw, environ).strip())
    except ValueError:
        raise ConfigurationError(
            f"Invalid {field} '{raw}' for connection '{name}', expected an integer"
        ) from None


_RESOLVABLE_FIELDS = frozenset(
    attribute.name for attribute in fields(ConnectionConfig) if attribute.name != "name"
)

# Maps to and from the record format stored by the host configuration.
_RECORD_KEYS = {
    "bind_dn": "binddn",
    "bind_password": "bindpwd",
    "base_dn": "basedn",
}


def _structure_str(value: Any, _: type) -> str:
    # The default hook calls `str()` on anything, turning a null into "None".
    if not isinstance(value, str):
        raise TypeError(f"Expected a string, got {type(value).__name__}")
    return value


record_converter = make_converter()
# Must be registered before the hooks below are generated.
record_converter.register_structure_hook(str, _structure_str)
record_converter.register_structure_hook(
    ConnectionConfig,
    make_dict_structure_fn(
        ConnectionConfig,
        record_converter,
        **{
            attribute: override(rename=key)
            for attribute, key in _RECORD_KEYS.items()
        },
    ),
)
record_converter.register_unstructure_hook(
    ConnectionConfig,
    make_dict_unstructure_fn(
        ConnectionConfig,
        record_converter,
        **{
            attribute: override(rename=key)
            for attribute, key in _RECORD_KEYS.items()
        },
    ),
)
