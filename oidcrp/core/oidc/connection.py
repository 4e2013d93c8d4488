"""Provider connections and the read-only registry that holds them."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from oidcrp.core.errors import ConfigurationError, UnknownConnection

DEFAULT_ID_TOKEN_ALGORITHM = "RS256"

_REQUIRED_FIELDS = (
    "name",
    "authorization_endpoint",
    "token_endpoint",
    "jwks_uri",
    "issuer",
    "client_id",
)


@dataclass(frozen=True)
class Connection:
    """Immutable configuration of one logical connection to an IdP."""

    name: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    issuer: str
    client_id: str
    client_secret: str = ""
    userinfo_endpoint: str | None = None
    scopes: tuple[str, ...] = ("openid",)
    additional_authorization_parameters: tuple[str, ...] = ()
    id_token_algorithm: str = DEFAULT_ID_TOKEN_ALGORITHM

    def __repr__(self) -> str:
        # omits client_secret
        return (
            f"Connection(name={self.name!r}, issuer={self.issuer!r}, "
            f"client_id={self.client_id!r}, scopes={self.scopes!r})"
        )

    def authorization_parameters(self) -> dict[str, str]:
        """Parse ``additional_authorization_parameters`` into a dict.

        Only entries of the literal shape ``key=value`` are kept; anything
        else (no ``=``, several ``=``, empty key or value) is ignored.
        """
        params: dict[str, str] = {}
        for entry in self.additional_authorization_parameters:
            parts = entry.split("=")
            if len(parts) == 2 and parts[0] and parts[1]:
                params[parts[0]] = parts[1]
        return params


def resolve_connection(raw: Mapping[str, Any]) -> Connection:
    """Build a :class:`Connection` from a raw configuration mapping.

    Args:
        raw: Mapping as found in the configuration file.

    Returns:
        The resolved connection.

    Raises:
        ConfigurationError: If a mandatory field is missing or blank.
    """
    missing = [key for key in _REQUIRED_FIELDS if not str(raw.get(key) or "").strip()]
    if missing:
        name = raw.get("name") or "<unnamed>"
        raise ConfigurationError(
            f"Connection '{name}' is missing required fields: {', '.join(missing)}",
            {"connection": name, "missing": missing},
        )

    scopes = raw.get("scopes") or ["openid"]
    if isinstance(scopes, str):
        scopes = scopes.split()

    extra = raw.get("additional_authorization_parameters") or []
    if isinstance(extra, Mapping):
        extra = [f"{key}={value}" for key, value in extra.items()]

    return Connection(
        name=str(raw["name"]).strip(),
        authorization_endpoint=raw["authorization_endpoint"],
        token_endpoint=raw["token_endpoint"],
        jwks_uri=raw["jwks_uri"],
        issuer=raw["issuer"],
        client_id=raw["client_id"],
        client_secret=raw.get("client_secret") or "",
        userinfo_endpoint=raw.get("userinfo_endpoint") or None,
        # ordered, without duplicates
        scopes=tuple(dict.fromkeys(str(s) for s in scopes)),
        additional_authorization_parameters=tuple(str(p) for p in extra),
        id_token_algorithm=raw.get("id_token_algorithm") or DEFAULT_ID_TOKEN_ALGORITHM,
    )


class ConnectionRegistry:
    """Read-only lookup table of connections by name.

    Built once at startup; nothing can be added or replaced afterwards, so
    concurrent readers need no locking.
    """

    def __init__(self, connections: Iterable[Connection] = ()) -> None:
        table: dict[str, Connection] = {}
        for connection in connections:
            if connection.name in table:
                raise ConfigurationError(
                    f"Duplicate connection name '{connection.name}'",
                    {"connection": connection.name},
                )
            table[connection.name] = connection
        self._connections: Mapping[str, Connection] = MappingProxyType(table)

    @classmethod
    def from_config(cls, raw_connections: Iterable[Mapping[str, Any]]) -> ConnectionRegistry:
        """Build a registry from raw configuration mappings."""
        return cls(resolve_connection(raw) for raw in raw_connections)

    def resolve(self, name: str) -> Connection:
        """Look up a connection by name.

        Raises:
            UnknownConnection: If no connection has that name.
        """
        try:
            return self._connections[name]
        except KeyError:
            raise UnknownConnection(name) from None

    def get(self, name: str) -> Connection | None:
        return self._connections.get(name)

    def names(self) -> list[str]:
        return sorted(self._connections)

    def __contains__(self, name: object) -> bool:
        return name in self._connections

    def __iter__(self) -> Iterator[Connection]:
        return iter(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)
