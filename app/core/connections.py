"""Connection resolution.

Credentials live outside this service. The controller only needs enough to
build and run a command: host, port, user, password and charset, plus an
optional row estimate for the target table.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
import httpx
import yaml
from app.core.errors import ValidationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionInfo:
    id: str
    host: str
    port: int
    username: str
    password: str = ""
    charset: str = "utf8mb4"
    environment: str = "dev"
    name: str = ""


@dataclass(frozen=True)
class TableStats:
    rows: int = 0
    data_length: int = 0
    engine: str | None = None


class ConnectionResolver:
    def resolve(self, connection_id: str) -> ConnectionInfo:
        raise NotImplementedError

    def table_stats(self, connection_id: str, database: str, table: str) -> Optional[TableStats]:
        return None


def _connection_from_dict(connection_id: str, data: Dict[str, Any]) -> ConnectionInfo:
    try:
        return ConnectionInfo(
            id=connection_id,
            host=str(data["host"]),
            port=int(data.get("port", 3306)),
            username=str(data.get("username") or data.get("user") or ""),
            password=str(data.get("password") or ""),
            charset=str(data.get("charset") or "utf8mb4"),
            environment=str(data.get("environment") or "dev"),
            name=str(data.get("name") or ""),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Connection {connection_id} is misconfigured: {e}") from e


class StaticConnectionResolver(ConnectionResolver):
    """Resolves connections from an in-memory mapping (settings.connections)."""

    def __init__(self, connections: Dict[str, Dict[str, Any]], tables: Dict[tuple, TableStats] | None = None):
        self.connections = dict(connections)
        self.tables = dict(tables or {})

    def resolve(self, connection_id: str) -> ConnectionInfo:
        data = self.connections.get(connection_id)
        if data is None:
            raise ValidationError(f"Connection {connection_id} does not exist")
        return _connection_from_dict(connection_id, data)

    @classmethod
    def from_yaml(cls, path: str, base: Dict[str, Dict[str, Any]] | None = None) -> "StaticConnectionResolver":
        """Load `connections:` from a YAML file, layered over base."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        connections = dict(base or {})
        connections.update({str(k): v for k, v in (data.get("connections") or {}).items()})
        tables = {}
        for entry in data.get("tables") or []:
            key = (str(entry["connection_id"]), entry["database"], entry["table"])
            tables[key] = TableStats(rows=int(entry.get("rows", 0)), data_length=int(entry.get("data_length", 0)),
                                     engine=entry.get("engine"))
        log.info("Loaded %d connections from %s", len(connections), path)
        return cls(connections, tables)

    def table_stats(self, connection_id: str, database: str, table: str) -> Optional[TableStats]:
        return self.tables.get((connection_id, database, table))


class HttpConnectionResolver(ConnectionResolver):
    """Resolves connections from the connection service over HTTP."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def resolve(self, connection_id: str) -> ConnectionInfo:
        url = f"{self.base_url}/connections/{connection_id}"
        r = self.client.get(url)
        if r.status_code == 404:
            raise ValidationError(f"Connection {connection_id} does not exist")
        r.raise_for_status()
        return _connection_from_dict(connection_id, r.json())

    def table_stats(self, connection_id: str, database: str, table: str) -> Optional[TableStats]:
        url = f"{self.base_url}/connections/{connection_id}/databases/{database}/tables/{table}"
        try:
            r = self.client.get(url)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("Table stats unavailable for %s.%s: %s", database, table, e)
            return None
        return TableStats(
            rows=int(data.get("table_rows") or data.get("rows") or 0),
            data_length=int(data.get("data_length") or 0),
            engine=data.get("engine"),
        )


def build_resolver(settings) -> ConnectionResolver:
    if settings.connection_service_url:
        return HttpConnectionResolver(settings.connection_service_url, timeout=settings.http_timeout_seconds)
    if settings.connections_file:
        return StaticConnectionResolver.from_yaml(settings.connections_file, base=settings.connections)
    return StaticConnectionResolver(settings.connections)
