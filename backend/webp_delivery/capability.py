"""Client WebP capability detection with session-scoped memoization."""
import logging
import re
from dataclasses import dataclass
from typing import Mapping, MutableMapping, Optional

from starlette.requests import Request

logger = logging.getLogger("webp_delivery.capability")

SESSION_KEY = "webp_support"

_CHROME_RE = re.compile(r"Chrome/([0-9]+)")
_OPERA_RE = re.compile(r"Opera/([0-9]+)\.[0-9]+")
_ANDROID_RE = re.compile(r"Android ([0-9]+)\.([0-9]+)")

CHROME_MIN_VERSION = 32
OPERA_MIN_VERSION = 19
ANDROID_MIN_VERSION = (4, 2)


@dataclass(frozen=True)
class ClientCapability:
    accepts_webp: bool = False


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value or ""


def _user_agent_supports_webp(user_agent: str) -> bool:
    m = _CHROME_RE.search(user_agent)
    if m and int(m.group(1)) >= CHROME_MIN_VERSION:
        return True
    m = _OPERA_RE.search(user_agent)
    if m and int(m.group(1)) >= OPERA_MIN_VERSION:
        return True
    m = _ANDROID_RE.search(user_agent)
    if m and (int(m.group(1)), int(m.group(2))) >= ANDROID_MIN_VERSION:
        return True
    return False


def detect_webp_support(headers: Mapping[str, str]) -> bool:
    """Inspect Accept, then fall back to User-Agent heuristics. Never raises."""
    accept = _header(headers, "accept")
    if "image/webp" in accept.lower():
        return True
    user_agent = _header(headers, "user-agent")
    if not user_agent:
        return False
    return _user_agent_supports_webp(user_agent)


def accepts_webp(headers: Mapping[str, str], session: Optional[MutableMapping] = None) -> bool:
    """Return the session's memoized capability, computing and storing it on first use."""
    if session is not None and SESSION_KEY in session:
        return bool(session[SESSION_KEY])
    result = detect_webp_support(headers)
    if session is not None:
        session[SESSION_KEY] = result
    logger.debug(
        "WebP support check: %s (Accept: %s, UA: %s)",
        "yes" if result else "no",
        _header(headers, "accept") or "not set",
        _header(headers, "user-agent"),
    )
    return result


def capability_for_request(request: Request) -> ClientCapability:
    """Resolve the capability of a Starlette request, using its session when one is installed."""
    session = request.session if "session" in request.scope else None
    return ClientCapability(accepts_webp=accepts_webp(request.headers, session))
