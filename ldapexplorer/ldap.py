from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Self

from attrs import field, frozen

from .constants import ALL_USER_ATTRIBUTES, LDAP_SUCCESS
from .enums import OutcomeStatus, Scope
from .errors import LdapExplorerError


@frozen
class SearchRequest:
    filter: str
    attributes: list[str] = field(factory=list)
    base_dn: str | None = None
    # Always whole-subtree, the field exists for logging and the transport.
    scope: Scope = field(default=Scope.SUB, init=False)

    @classmethod
    def create(
        cls,
        filtr: str,
        attributes: str | Iterable[str] | None = None,
        base_dn: str | None = None,
    ) -> Self:
        """
        Attributes may be given as a list, or as text with one attribute
        per line (as typed into a search form, so CRLF is accepted).
        """
        if attributes is None:
            attribute_list: list[str] = []
        elif isinstance(attributes, str):
            attribute_list = [
                line.strip() for line in attributes.splitlines() if line.strip()
            ]
        else:
            attribute_list = [attr.strip() for attr in attributes if attr.strip()]

        return cls(filtr.strip(), attribute_list, base_dn or None)

    def search_attributes(self) -> list[str]:
        # An empty list means "all user attributes".
        return self.attributes or [ALL_USER_ATTRIBUTES]


@frozen
class SearchEntry:
    dn: str
    attrs: dict[str, list[str]]
    bin_attrs: dict[str, list[bytes]] = field(factory=dict)

    def __str__(self) -> str:
        return self.dn

    @classmethod
    def create(cls, dn: str, raw_attributes: Mapping[str, Any]) -> Self:
        """
        Values that are valid UTF-8 end up in `attrs`, the rest
        in `bin_attrs`, so one attribute may be split over both.
        """
        attrs: dict[str, list[str]] = {}
        bin_attrs: dict[str, list[bytes]] = {}
        for name, raw_values in raw_attributes.items():
            if isinstance(raw_values, str | bytes) or not isinstance(
                raw_values, Iterable
            ):
                raw_values = [raw_values]
            for value in raw_values:
                if isinstance(value, bytes):
                    try:
                        text = value.decode("utf-8")
                    except UnicodeDecodeError:
                        bin_attrs.setdefault(name, []).append(value)
                    else:
                        attrs.setdefault(name, []).append(text)
                else:
                    attrs.setdefault(name, []).append(str(value))
        return cls(dn, attrs, bin_attrs)

    def attribute_names(self) -> list[str]:
        return list(dict.fromkeys([*self.attrs, *self.bin_attrs]))

    def values(self, name: str) -> list[str | bytes]:
        return [*self.attrs.get(name, []), *self.bin_attrs.get(name, [])]


@frozen
class Referral:
    uris: list[str]

    def __str__(self) -> str:
        return ",".join(self.uris)


@frozen
class SearchDone:
    """The completion status reported by the server at the end of a search."""

    result_code: int
    description: str = ""
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.result_code == LDAP_SUCCESS

    def __str__(self) -> str:
        detail = f"{self.description} ({self.result_code})"
        if self.message:
            detail += f": {self.message}"
        return detail


@frozen
class SearchOutcome:
    status: OutcomeStatus
    entry_count: int
    error: LdapExplorerError | None = None
    referrals: list[Referral] = field(factory=list)

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    @property
    def detail(self) -> str | None:
        return str(self.error) if self.error is not None else None

    @classmethod
    def success(cls, entry_count: int, referrals: list[Referral]) -> Self:
        return cls(OutcomeStatus.OK, entry_count, None, referrals)

    @classmethod
    def failure(
        cls,
        error: LdapExplorerError,
        entry_count: int = 0,
        referrals: list[Referral] | None = None,
    ) -> Self:
        return cls(OutcomeStatus.ERROR, entry_count, error, referrals or [])

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error
