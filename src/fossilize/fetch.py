"""Streaming HTTP download of runtime archives."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import IO, Any
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from fossilize.errors import FetchError

Opener = Callable[[str], Any]

DEFAULT_DIST_URL = "https://nodejs.org/dist"

# Statuses that are successful but never carry a body.
_EMPTY_BODY_STATUSES = (204, 205)


def archive_url(dist_url: str, version: str, archive_name: str) -> str:
    return f"{dist_url.rstrip('/')}/v{version}/{archive_name}"


@contextmanager
def open_stream(url: str, *, opener: Opener = urlopen) -> Iterator[IO[bytes]]:
    """Open ``url`` and yield its body without reading it into memory.

    Raises ``FetchError`` carrying the HTTP status when the response is not
    successful or has no body.
    """
    try:
        response = opener(url)  # noqa: S310 - callers control the distribution URL
    except HTTPError as exc:
        raise FetchError(
            f"Failed to fetch {url}: {exc.code} {exc.reason}",
            hint="Check that the runtime version and platform exist on the distribution server.",
            context={"operation": "fetch", "url": url, "status": str(exc.code)},
        ) from exc
    except URLError as exc:
        raise FetchError(
            f"Failed to fetch {url}: {exc.reason}",
            context={"operation": "fetch", "url": url},
        ) from exc

    if response is None:
        raise FetchError(
            f"Response body is null for {url}",
            context={"operation": "fetch", "url": url},
        )
    with response:
        status = getattr(response, "status", None)
        reason = getattr(response, "reason", "") or ""
        if status is not None and not 200 <= status < 300:
            raise FetchError(
                f"Failed to fetch {url}: {status} {reason}".rstrip(),
                hint="Check that the runtime version and platform exist on the distribution server.",
                context={"operation": "fetch", "url": url, "status": str(status)},
            )
        if status in _EMPTY_BODY_STATUSES:
            raise FetchError(
                f"Response body is null for {url}: {status} {reason}".rstrip(),
                context={"operation": "fetch", "url": url, "status": str(status)},
            )
        yield response


__all__ = ["DEFAULT_DIST_URL", "Opener", "archive_url", "open_stream"]
