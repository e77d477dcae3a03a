class LdapExplorerError(Exception):
    """Superclass for all exceptions"""


class ConfigurationError(LdapExplorerError):
    """A connection was configured incorrectly"""


class ConnectionNotFoundError(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"Unable to find connection '{name}'")
        self.name = name


class ConnectError(LdapExplorerError):
    """Could not establish a connection to the directory server"""


class BindError(LdapExplorerError):
    """The directory server rejected the bind"""


class SearchError(LdapExplorerError):
    """The search failed, or completed with a non-success status"""

    def __init__(self, message: str, result_code: int | None = None):
        super().__init__(message)
        self.result_code = result_code


class SessionClosedError(LdapExplorerError):
    """An operation was attempted on a session that has already been closed"""


class AmbiguousNameWarning(UserWarning):
    pass
