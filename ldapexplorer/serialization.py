"""Serialization of the messages sent to the presentation layer"""

from __future__ import annotations

import base64
from functools import singledispatch
from typing import Any

from .config import ConnectionConfig
from .ldap import SearchEntry, SearchOutcome


@singledispatch
def ldapexplorer_serialization(val: Any) -> dict[Any, Any]:
    """default"""
    raise NotImplementedError()


@ldapexplorer_serialization.register(SearchEntry)
def search_entry(val: SearchEntry) -> dict[str, Any]:
    attributes: dict[str, list[str]] = {}
    for name in val.attribute_names():
        attributes[name] = [
            *val.attrs.get(name, []),
            # Binary values (certificates, photos etc.) are base64 encoded
            *(
                base64.b64encode(value).decode("ascii")
                for value in val.bin_attrs.get(name, [])
            ),
        ]
    return {"distinguishedName": val.dn, "attributes": attributes}


@ldapexplorer_serialization.register(SearchOutcome)
def search_outcome(val: SearchOutcome) -> dict[str, Any]:
    dumped: dict[str, Any] = {
        "status": val.status.value,
        "entryCount": val.entry_count,
    }
    if val.detail is not None:
        dumped["detail"] = val.detail
    if val.referrals:
        dumped["referrals"] = [uri for ref in val.referrals for uri in ref.uris]
    return dumped


@ldapexplorer_serialization.register(ConnectionConfig)
def connection_config(val: ConnectionConfig) -> dict[str, str]:
    # Never the password, not even an indirection token.
    return {"name": val.name, "identity": val.identity()}
