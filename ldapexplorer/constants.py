ENV_PREFIX = "env:"

DEFAULT_PROTOCOL = "ldap"
DEFAULT_PORT = "389"
DEFAULT_TIMEOUT = "5000"

# Number of entries asked for in each round-trip of a paged search.
LDAP_PAGE_SIZE = 500

# Simple paged results control, RFC 2696
PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"

LDAP_SUCCESS = 0

ALL_USER_ATTRIBUTES = "*"

CONNECTIONS_FILE = "~/.config/ldap-explorer/connections.json"
