from enum import Enum


class LdapProtocol(Enum):
    LDAP = "ldap"
    LDAPS = "ldaps"


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    BOUND = "bound"
    SEARCHING = "searching"
    COMPLETED = "completed"
    FAILED = "failed"
    CLOSED = "closed"


class OutcomeStatus(Enum):
    OK = "ok"
    ERROR = "error"


class Scope(Enum):
    # Only whole-subtree searches are done.
    SUB = "sub"
