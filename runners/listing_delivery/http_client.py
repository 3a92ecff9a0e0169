from __future__ import annotations

import ssl
import urllib.parse
from collections.abc import Callable
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, HTTPSHandler, Request, build_opener

USER_AGENT = "listing-delivery-runner/1.0"


class HttpClientError(Exception):
    pass


class _SafeRedirectHandler(HTTPRedirectHandler):
    def __init__(self, is_host_allowed: Callable[[str], bool] | None) -> None:
        super().__init__()
        self._is_host_allowed = is_host_allowed

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        # urllib may pass relative URLs here; normalize against the previous URL.
        absolute = urllib.parse.urljoin(req.full_url, str(newurl))
        parsed = urllib.parse.urlparse(absolute)
        if parsed.scheme not in ("http", "https"):
            raise HttpClientError("Only http/https are supported (redirect)")
        if self._is_host_allowed is not None and not self._is_host_allowed(parsed.hostname or ""):
            raise HttpClientError(f"Host {parsed.hostname} is not in allowlist (redirect)")
        return super().redirect_request(req, fp, code, msg, headers, absolute)


def _check_url(url: str, is_host_allowed: Callable[[str], bool] | None) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    if is_host_allowed is not None and not is_host_allowed(parsed.hostname or ""):
        raise HttpClientError(f"Host {parsed.hostname} is not in allowlist")


def _open(req: Request, timeout: float, is_host_allowed: Callable[[str], bool] | None) -> dict[str, object]:
    ctx = ssl.create_default_context()
    opener = build_opener(_SafeRedirectHandler(is_host_allowed), HTTPSHandler(context=ctx))
    try:
        with opener.open(req, timeout=timeout) as resp:
            body = resp.read(64 * 1024) if req.get_method() != "HEAD" else b""
            return {"status": resp.status, "headers": dict(resp.headers), "body": body.decode(errors="replace")}
    except HTTPError as exc:
        # Non-2xx is a response, not a transport failure.
        headers = dict(exc.headers) if exc.headers is not None else {}
        return {"status": exc.code, "headers": headers, "body": ""}
    except (TimeoutError, URLError, OSError) as exc:
        raise HttpClientError(str(exc)) from exc


def http_probe(
    url: str,
    *,
    method: str = "HEAD",
    timeout: float = 10.0,
    headers: dict[str, str] | None = None,
    is_host_allowed: Callable[[str], bool] | None = None,
) -> dict[str, object]:
    """Issue a HEAD (or small GET) request and return status + headers."""
    _check_url(url, is_host_allowed)
    req = Request(url, method=method, headers={"User-Agent": USER_AGENT, **(headers or {})})
    return _open(req, timeout, is_host_allowed)


def http_post_json(
    url: str,
    body: str,
    *,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
) -> dict[str, object]:
    """POST an already-serialized JSON body (byte-exact, so signatures stay valid)."""
    _check_url(url, None)
    all_headers = {"User-Agent": USER_AGENT, "Content-Type": "application/json", **(headers or {})}
    req = Request(url, data=body.encode("utf-8"), method="POST", headers=all_headers)
    return _open(req, timeout, None)


__all__ = ["HttpClientError", "http_post_json", "http_probe"]
