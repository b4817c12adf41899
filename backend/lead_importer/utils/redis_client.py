"""Create Redis clients, with TLS handling for hosted providers."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis

TLS_HOST_SUFFIXES = (".upstash.io",)


def uses_tls(url: str) -> bool:
    return url.startswith("rediss://") or any(suffix in url for suffix in TLS_HOST_SUFFIXES)


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client for ``url``.

    Hosted providers that require TLS but are configured with ``redis://``
    are switched to ``rediss://``; certificate verification is relaxed for
    them since they present shared certificates.
    """
    if uses_tls(url) and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)

    client = Redis.from_url(url, **kwargs)

    if uses_tls(url):
        connection_kwargs = getattr(client.connection_pool, "connection_kwargs", None)
        if connection_kwargs is not None:
            connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client
