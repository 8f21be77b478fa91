from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_TRUTHY = {"1", "true", "yes", "on", "require"}
_FALSY = {"0", "false", "no", "off", "disable"}


def normalize_database_url(url: str) -> str:
    """Return an async-driver URL for hosted Postgres connection strings.

    Hosting providers hand out ``postgres://`` URLs with ``?ssl=true``; the
    async engine needs an explicit driver and ``sslmode``.
    """
    url = (url or "").strip()
    if not url:
        return url

    parts = urlsplit(url)
    scheme = parts.scheme
    if scheme in {"postgres", "postgresql", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    ssl_key = next((key for key in query if key.lower() == "ssl"), None)
    if ssl_key is not None:
        raw = query.pop(ssl_key).lower().strip()
        if "sslmode" not in query:
            if raw in _FALSY:
                query["sslmode"] = "disable"
            elif raw in {"verify-ca", "verify-full"}:
                query["sslmode"] = raw
            elif raw in _TRUTHY:
                query["sslmode"] = "require"
            else:
                query["sslmode"] = "prefer"

    return urlunsplit((scheme, parts.netloc, parts.path, urlencode(query, doseq=True), parts.fragment))
