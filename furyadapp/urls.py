"""Database URL construction and credential redaction."""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

# Characters kept verbatim in the user-info part; everything else is escaped.
_USERINFO_SAFE = "$&+,;="


@dataclass(frozen=True)
class PostgreSQLConfig:
    """Connection settings for a PostgreSQL database."""

    user: str
    password: str
    host: str
    port: int
    database_name: str


def postgresql_url(conf: PostgreSQLConfig) -> str:
    """Build a ``postgres://`` URL from connection settings."""
    if conf is None:
        raise ValueError("nil conf")
    userinfo = (
        quote(conf.user, safe=_USERINFO_SAFE)
        + ":"
        + quote(conf.password, safe=_USERINFO_SAFE)
    )
    netloc = f"{userinfo}@{conf.host}:{conf.port}"
    path = conf.database_name
    if path and not path.startswith("/"):
        path = "/" + path
    return urlunsplit(("postgres", netloc, path, "", ""))


def redact_password(url: Optional[str]) -> Optional[str]:
    """Return the URL with the password removed from its user info."""
    if url is None:
        return None
    parts = urlsplit(url)
    userinfo, _, hostport = parts.netloc.rpartition("@")
    username = userinfo.partition(":")[0]
    return urlunsplit(parts._replace(netloc=f"{username}@{hostport}"))