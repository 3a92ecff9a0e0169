"""Persisted credential artifact (cookie jar + per-origin storage placeholders).

File format:
    {"cookies": [{name, value, domain, path, expires, httpOnly, secure, sameSite}],
     "origins": [{"origin": "...", "localStorage": []}]}

`expires` is unix seconds, or -1 for session cookies.

The artifact is produced out-of-band (interactive login, cookie export) and
consumed read-only by the session manager. Writes are atomic and 0600.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from .atomic import write_json_atomic
from .errors import AuthRequired

_SAME_SITE = {"strict": "Strict", "lax": "Lax", "none": "None"}


def _normalize_same_site(raw: Any) -> str:
    return _SAME_SITE.get(str(raw or "").strip().lower(), "Lax")


def _normalize_expires(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return -1
    return value if value > 0 else -1


def normalize_cookie(raw: dict[str, Any]) -> dict[str, Any]:
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ValueError("cookie without a name")
    domain = str(raw.get("domain") or "").strip()
    if not domain:
        raise ValueError(f"cookie {name!r} has no domain")
    return {
        "name": name,
        "value": str(raw.get("value") or ""),
        "domain": domain,
        "path": str(raw.get("path") or "/"),
        "expires": _normalize_expires(raw.get("expires")),
        "httpOnly": bool(raw.get("httpOnly", False)),
        "secure": bool(raw.get("secure", False)),
        "sameSite": _normalize_same_site(raw.get("sameSite")),
    }


def validate_storage_state(obj: Any) -> dict[str, Any]:
    """Return a normalized copy or raise ValueError describing the first problem."""
    if not isinstance(obj, dict):
        raise ValueError("storage state must be a JSON object")
    cookies = obj.get("cookies")
    if not isinstance(cookies, list):
        raise ValueError("storage state is missing a 'cookies' list")
    normalized = [normalize_cookie(c) for c in cookies if isinstance(c, dict)]
    if not normalized:
        raise ValueError("storage state holds no cookies")

    origins_raw = obj.get("origins")
    origins: list[dict[str, Any]] = []
    if isinstance(origins_raw, list):
        for item in origins_raw:
            if isinstance(item, dict) and isinstance(item.get("origin"), str):
                ls = item.get("localStorage")
                origins.append({"origin": item["origin"], "localStorage": ls if isinstance(ls, list) else []})
    return {"cookies": normalized, "origins": origins}


def load_storage_state(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.exists() or not p.is_file():
        raise AuthRequired(f"Credential artifact not found at {p}", path=str(p))
    try:
        obj = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise AuthRequired(f"Credential artifact is unreadable: {exc}", path=str(p)) from exc
    try:
        return validate_storage_state(obj)
    except ValueError as exc:
        raise AuthRequired(f"Credential artifact is invalid: {exc}", path=str(p)) from exc


def save_storage_state(state: dict[str, Any], path: str | Path) -> dict[str, Any]:
    normalized = validate_storage_state(state)
    p = write_json_atomic(path, normalized)
    return {"ok": True, "path": str(p), **summarize_storage_state(normalized)}


def summarize_storage_state(state: dict[str, Any], *, now: float | None = None) -> dict[str, Any]:
    cookies = [c for c in state.get("cookies") or [] if isinstance(c, dict)]
    now = time.time() if now is None else now
    expiries = [float(c["expires"]) for c in cookies if isinstance(c.get("expires"), (int, float)) and c["expires"] > 0]
    future = [e for e in expiries if e > now]
    return {
        "cookie_count": len(cookies),
        "domains": sorted({str(c.get("domain") or "") for c in cookies if c.get("domain")}),
        "session_cookie_count": sum(1 for c in cookies if not (isinstance(c.get("expires"), (int, float)) and c["expires"] > 0)),
        "expired_cookie_count": len(expiries) - len(future),
        "soonest_expiry": min(future) if future else None,
    }


def storage_state_from_cookie_header(header: str, domain: str, *, secure: bool = True) -> dict[str, Any]:
    """Build an artifact from a raw `Cookie:` header copied from a logged-in browser."""
    if not domain:
        raise ValueError("domain is required")
    cookies: list[dict[str, Any]] = []
    raw = header.split(":", 1)[1] if header.lower().startswith("cookie:") else header
    for part in raw.split(";"):
        name, sep, value = part.strip().partition("=")
        if not sep or not name.strip():
            continue
        cookies.append(
            normalize_cookie(
                {
                    "name": name.strip(),
                    "value": value.strip(),
                    "domain": domain,
                    "path": "/",
                    "expires": -1,
                    "httpOnly": False,
                    "secure": secure,
                    "sameSite": "Lax",
                }
            )
        )
    origin = f"https://{domain.lstrip('.')}"
    return validate_storage_state({"cookies": cookies, "origins": [{"origin": origin, "localStorage": []}]})


def to_cdp_cookies(state: dict[str, Any]) -> list[dict[str, Any]]:
    """Map artifact cookies to `Network.setCookies` params."""
    out: list[dict[str, Any]] = []
    for cookie in state.get("cookies") or []:
        item: dict[str, Any] = {
            "name": cookie["name"],
            "value": cookie["value"],
            "domain": cookie["domain"],
            "path": cookie.get("path") or "/",
            "httpOnly": bool(cookie.get("httpOnly")),
            "secure": bool(cookie.get("secure")),
            "sameSite": cookie.get("sameSite") or "Lax",
        }
        expires = cookie.get("expires")
        if isinstance(expires, (int, float)) and expires > 0:
            item["expires"] = float(expires)
        # Chrome rejects SameSite=None without Secure.
        if item["sameSite"] == "None" and not item["secure"]:
            item["sameSite"] = "Lax"
        out.append(item)
    return out


__all__ = [
    "load_storage_state",
    "normalize_cookie",
    "save_storage_state",
    "storage_state_from_cookie_header",
    "summarize_storage_state",
    "to_cdp_cookies",
    "validate_storage_state",
]
