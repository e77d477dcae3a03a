import os


def is_dev() -> bool:
    return bool(os.getenv("DEV"))


def get_version() -> str:
    return os.getenv("LDAP_EXPLORER_VERSION", "dev")
