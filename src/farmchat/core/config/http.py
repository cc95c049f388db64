"""HTTP client configuration and factory."""

from dataclasses import dataclass

import httpx

DEFAULT_USER_AGENT = "farmchat/0.1"

DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass(frozen=True, slots=True)
class HttpxClientOptions:
    """Options for configuring an httpx.AsyncClient."""

    timeout: float = 30.0
    connect_timeout: float = 10.0
    max_connections: int = 20
    max_keepalive: int = 10
    headers: dict[str, str] | None = None
    follow_redirects: bool = True
    transport: httpx.AsyncBaseTransport | None = None


def get_or_create_httpx_client(
    client_holder: list[httpx.AsyncClient | None],
    *,
    options: HttpxClientOptions | None = None,
) -> httpx.AsyncClient:
    """Get or create a shared httpx.AsyncClient with lazy initialization.

    Args:
        client_holder: A mutable list containing the client instance (or empty).
            Used as a container so the client can be stored globally.
        options: Optional configuration overrides for the httpx client.

    Returns:
        httpx.AsyncClient instance.

    Example:
        _chat_client = []  # Container for lazy init
        def get_chat_client():
            return get_or_create_httpx_client(
                _chat_client,
                options=HttpxClientOptions(timeout=60.0),
            )

    """
    if (
        client_holder
        and client_holder[0] is not None
        and not client_holder[0].is_closed
    ):
        return client_holder[0]

    effective_options = options or HttpxClientOptions()
    final_headers = {**DEFAULT_HEADERS, **(effective_options.headers or {})}

    client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            effective_options.timeout,
            connect=effective_options.connect_timeout,
        ),
        limits=httpx.Limits(
            max_connections=effective_options.max_connections,
            max_keepalive_connections=effective_options.max_keepalive,
        ),
        headers=final_headers,
        follow_redirects=effective_options.follow_redirects,
        transport=effective_options.transport,
    )

    if len(client_holder) == 0:
        client_holder.append(client)
    else:
        client_holder[0] = client

    return client
