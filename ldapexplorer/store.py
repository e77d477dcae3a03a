from __future__ import annotations

import json
import logging
import os
import tempfile
import warnings
from pathlib import Path

from cattrs.errors import BaseValidationError

from .config import ConnectionConfig
from .constants import CONNECTIONS_FILE
from .errors import AmbiguousNameWarning, ConfigurationError, ConnectionNotFoundError

logger = logging.getLogger(__name__)


class ConnectionStore:
    """
    The named connections, persisted as a JSON file.

    Names are not required to be unique. Lookups, edits and removals all
    act on the first connection with the given name. Every operation reads
    the file again, so changes made by others are picked up.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def from_env(cls) -> ConnectionStore:
        path = os.getenv("LDAP_EXPLORER_CONNECTIONS_FILE") or CONNECTIONS_FILE
        return cls(Path(path).expanduser())

    def list_all(self) -> list[ConnectionConfig]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            records = data.get("connections", []) if isinstance(data, dict) else data
            return [ConnectionConfig.from_record(record) for record in records]
        except (ValueError, TypeError, AttributeError, BaseValidationError) as e:
            raise ConfigurationError(
                f"Unable to read connections from {self.path}: {e}"
            ) from e

    def find_by_name(self, name: str) -> ConnectionConfig:
        matches = [config for config in self.list_all() if config.name == name]
        if not matches:
            raise ConnectionNotFoundError(name)
        if len(matches) > 1:
            message = (
                f"Found {len(matches)} LDAP connections with name '{name}', "
                "expected at most 1."
            )
            logger.warning(message)
            warnings.warn(message, AmbiguousNameWarning, stacklevel=2)
        return matches[0]

    def add(self, config: ConnectionConfig) -> None:
        connections = self.list_all()
        connections.append(config)
        self._save(connections)

    def edit(self, new: ConnectionConfig, existing: ConnectionConfig) -> None:
        # The whole connection is replaced, there is no partial update.
        connections = self.list_all()
        index = self._index_of(connections, existing.name)
        connections[index] = new
        self._save(connections)

    def remove(self, config: ConnectionConfig) -> None:
        connections = self.list_all()
        del connections[self._index_of(connections, config.name)]
        self._save(connections)

    @staticmethod
    def _index_of(connections: list[ConnectionConfig], name: str) -> int:
        for index, config in enumerate(connections):
            if config.name == name:
                return index
        raise ConnectionNotFoundError(name)

    def _save(self, connections: list[ConnectionConfig]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(
            {"connections": [config.to_record() for config in connections]},
            ensure_ascii=False,
            indent=2,
        )
        # Write to a temp file first, so a crash never leaves a half file.
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Saved %d connections to %s", len(connections), self.path)
