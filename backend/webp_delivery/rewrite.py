"""Rewrite <img> tags that point at converted uploads into <picture> markup."""
import logging
import posixpath
import re
import time
from typing import Callable, Optional
from urllib.parse import unquote

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from webp_delivery.cache import CacheStore, cache_key, get_cache_store
from webp_delivery.capability import ClientCapability, capability_for_request
from webp_delivery.config import CACHE_BASE_URL, REWRITE_EXCLUDED_PREFIXES, SOURCE_EXTENSIONS, UPLOAD_BASE_URL
from webp_delivery.serving import compute_etag, etag_matches

logger = logging.getLogger("webp_delivery.rewrite")

_HTML_OPEN_RE = re.compile(r"<html[^>]*>", re.IGNORECASE)

_CONDITIONAL_HEADERS = (b"if-none-match", b"if-modified-since")
_REPLACED_HEADERS = (b"content-length", b"etag", b"last-modified")


class HtmlRewriter:
    def __init__(
        self,
        store: CacheStore,
        upload_base_url: str = UPLOAD_BASE_URL,
        cache_base_url: str = CACHE_BASE_URL,
    ):
        self.store = store
        self.upload_base_url = upload_base_url.rstrip("/")
        self.cache_base_url = cache_base_url.rstrip("/")
        # src must be preceded by whitespace so data-src and friends are left alone
        self._img_re = re.compile(
            r"<img\b([^>]*?\s)src=(['\"])("
            + re.escape(self.upload_base_url)
            + r"/[^\"'>]+\.(?:jpe?g|png|gif))\2([^>]*)>",
            re.IGNORECASE,
        )

    def webp_url(self, src: str) -> Optional[str]:
        """Cache URL for an upload src if its artifact already exists. Never converts."""
        logical = posixpath.normpath(unquote(src[len(self.upload_base_url):]).lstrip("/"))
        if logical.startswith("..") or logical == ".":
            return None
        if not self.store.has_artifact(logical):
            return None
        return f"{self.cache_base_url}/{cache_key(logical)}.webp"

    def _replace(self, match: re.Match) -> str:
        tag = match.group(0)
        try:
            webp_url = self.webp_url(match.group(3))
        except (OSError, ValueError) as e:
            logger.debug("Leaving %s untouched: %s", match.group(3), e)
            return tag
        if webp_url is None:
            return tag
        return f'<picture><source srcset="{webp_url}" type="image/webp">{tag}</picture>'

    def rewrite(self, html: str) -> str:
        if not _HTML_OPEN_RE.search(html):
            return html
        start = time.perf_counter()
        try:
            processed = self._img_re.sub(self._replace, html)
        except Exception:
            logger.exception("HTML rewriting failed; serving the document unchanged")
            return html
        logger.debug("HTML processing completed in %.4f seconds", time.perf_counter() - start)
        return processed


def should_rewrite(
    request: Request,
    capability: ClientCapability,
    excluded_prefixes: list[str] = REWRITE_EXCLUDED_PREFIXES,
) -> bool:
    """Only front-end GET requests from WebP-capable clients; never admin, AJAX or scheduled tasks."""
    if request.method != "GET":
        return False
    path = request.url.path
    for prefix in excluded_prefixes:
        if path == prefix or path.startswith(prefix + "/"):
            return False
    if request.headers.get("x-requested-with", "").lower() == "xmlhttprequest":
        return False
    if "x-scheduled-task" in request.headers:
        return False
    return capability.accepts_webp


def _is_html(response: Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower() == "text/html" and "content-encoding" not in response.headers


def _is_image_path(path: str) -> bool:
    suffix = posixpath.splitext(path)[1].lower()
    return suffix in SOURCE_EXTENSIONS or suffix == ".webp"


def _charset(response: Response) -> str:
    for part in response.headers.get("content-type", "").split(";")[1:]:
        name, _, value = part.strip().partition("=")
        if name.lower() == "charset" and value:
            return value.strip('"')
    return "utf-8"


class WebpRewriteMiddleware(BaseHTTPMiddleware):
    """Buffers eligible HTML responses and runs them through HtmlRewriter once."""

    def __init__(
        self,
        app,
        rewriter_factory: Optional[Callable[[], HtmlRewriter]] = None,
        excluded_prefixes: Optional[list[str]] = None,
    ):
        super().__init__(app)
        self._rewriter_factory = rewriter_factory or (lambda: HtmlRewriter(get_cache_store()))
        self._rewriter: Optional[HtmlRewriter] = None
        self.excluded_prefixes = REWRITE_EXCLUDED_PREFIXES if excluded_prefixes is None else excluded_prefixes

    @property
    def rewriter(self) -> HtmlRewriter:
        if self._rewriter is None:
            self._rewriter = self._rewriter_factory()
        return self._rewriter

    async def dispatch(self, request: Request, call_next):
        capability = capability_for_request(request)
        eligible = should_rewrite(request, capability, self.excluded_prefixes)
        if_none_match = None
        if eligible and not _is_image_path(request.url.path):
            # The downstream validators describe the stored file, not the rewritten page
            if_none_match = request.headers.get("if-none-match")
            request.scope["headers"] = [
                (k, v) for k, v in request.scope["headers"] if k.lower() not in _CONDITIONAL_HEADERS
            ]
        response = await call_next(request)
        if not eligible or not _is_html(response):
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        charset = _charset(response)
        try:
            html = body.decode(charset)
        except (LookupError, UnicodeDecodeError):
            logger.debug("Could not decode HTML response as %s; passing through", charset)
            new_body = body
        else:
            new_body = self.rewriter.rewrite(html).encode(charset)

        etag = compute_etag(new_body)
        headers = [(k, v) for k, v in response.raw_headers if k.lower() not in _REPLACED_HEADERS]
        headers.append((b"etag", etag.encode("latin-1")))
        if response.status_code == 200 and etag_matches(if_none_match, etag):
            not_modified = Response(status_code=304)
            not_modified.raw_headers = [(k, v) for k, v in headers if k.lower() != b"content-type"]
            return not_modified

        rewritten = Response(content=new_body, status_code=response.status_code)
        rewritten.raw_headers = headers + [(b"content-length", str(len(new_body)).encode("latin-1"))]
        return rewritten
