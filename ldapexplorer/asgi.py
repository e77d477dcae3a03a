import logging
import os

from ldapexplorer import is_dev
from ldapexplorer.logging import configure_logging
from ldapexplorer.web import app

app.state.dev = is_dev()

log_level = logging.DEBUG if app.state.dev else logging.INFO

configure_logging(log_level, os.getenv("LDAP_EXPLORER_LOG_FILES"))
