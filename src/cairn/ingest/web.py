"""URL payloads: fetch a page and reduce it to a title plus readable text.

Fetch policy:
  schemes        http and https
  addresses      every resolved address must be public (checked again on
                 each redirect hop, at most 3 hops)
  content types  text/html, text/plain
  body size      5 MB unless configured otherwise
  timeout        30 s unless configured otherwise

Network failures, timeouts, 408/425/429 and 5xx raise FetchError (retried by
the queue). Other HTTP statuses and pages without readable text raise
ExtractError. Policy violations raise ValidationError subclasses.
"""

from __future__ import annotations

import ipaddress
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from http.client import HTTPResponse

import html2text
from bs4 import BeautifulSoup

from cairn.errors import ExtractError, FetchError, UnsupportedFormatError, ValidationError

_USER_AGENT = "cairn/0.1 (knowledge graph ingestion)"
_MAX_BYTES = 5 * 1024 * 1024
_TIMEOUT = 30
_MAX_REDIRECTS = 3
_SCHEMES = ("http", "https")
_TEXT_TYPES = ("text/html", "text/plain")
_RETRYABLE_STATUS = {408, 425, 429}
_DROP_TAGS = ["script", "style", "noscript", "nav", "footer", "head", "aside", "form"]

_markdown = html2text.HTML2Text()
_markdown.ignore_links = True
_markdown.ignore_images = True
_markdown.body_width = 0


class SsrfError(ValidationError):
    """The URL points at a private, loopback or otherwise internal address."""


@dataclass
class FetchedPage:
    url: str
    title: str
    text: str


def _is_internal(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def _split_content_type(header: str) -> tuple[str, str]:
    """'text/html; charset=ISO-8859-1' -> ('text/html', 'iso-8859-1')."""
    media, _, params = header.partition(";")
    charset = "utf-8"
    for param in params.split(";"):
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            charset = value.strip('"').lower()
    return media.strip().lower(), charset


class PageFetcher:
    """Blocking page fetcher; the normalizer runs it in a worker thread.

    Args:
        timeout: Seconds for connect plus read.
        max_bytes: Largest accepted response body.
    """

    def __init__(self, timeout: float = _TIMEOUT, max_bytes: int = _MAX_BYTES) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes

    def fetch(self, url: str) -> FetchedPage:
        """Return the title and readable text of *url*.

        Raises:
            FetchError: DNS, connection, timeout or retryable HTTP failure.
            ExtractError: Non-retryable HTTP status or a page without text.
            ValidationError: Scheme, address, content type or size rejected.
        """
        self._validate_scheme(url)
        self._check_ssrf(url)
        body, content_type, charset = self._download(url)
        title, text = self._to_plain_text(body, content_type, charset)
        if not text.strip():
            raise ExtractError(f"No readable content at '{url}'")
        return FetchedPage(url=url, title=title, text=text)

    @staticmethod
    def _validate_scheme(url: str) -> None:
        scheme = urllib.parse.urlparse(url).scheme
        if scheme not in _SCHEMES:
            raise ValidationError(f"URL scheme '{scheme}' is not allowed; use http or https.")

    @staticmethod
    def _check_ssrf(url: str) -> None:
        """Resolve the host and reject it if any address is internal."""
        hostname = urllib.parse.urlparse(url).hostname
        if not hostname:
            raise ValidationError(f"URL has no hostname: '{url}'")
        try:
            infos = socket.getaddrinfo(hostname, None)
        except socket.gaierror as exc:
            raise FetchError(f"DNS lookup failed for '{hostname}': {exc}") from exc

        for info in infos:
            try:
                ip = ipaddress.ip_address(info[4][0])
            except ValueError:
                continue
            if _is_internal(ip):
                raise SsrfError(
                    f"'{hostname}' resolves to private address {ip}; refusing to fetch."
                )

    def _download(self, url: str) -> tuple[bytes, str, str]:
        """Return (body, media type, charset) for *url*."""
        request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
        opener = urllib.request.build_opener(_CheckedRedirectHandler(_MAX_REDIRECTS))
        try:
            response: HTTPResponse = opener.open(request, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            if exc.code in _RETRYABLE_STATUS or exc.code >= 500:
                raise FetchError(f"HTTP {exc.code} from '{url}'") from exc
            raise ExtractError(f"HTTP {exc.code} from '{url}'") from exc
        except urllib.error.URLError as exc:
            raise FetchError(f"Could not fetch '{url}': {exc.reason}") from exc
        except (TimeoutError, socket.timeout) as exc:
            raise FetchError(f"Timed out fetching '{url}'") from exc

        with response:
            media, charset = _split_content_type(response.headers.get("Content-Type", "text/html"))
            if media not in _TEXT_TYPES:
                raise UnsupportedFormatError(
                    f"Content-Type '{media}' at '{url}' is not supported "
                    f"(accepted: {', '.join(_TEXT_TYPES)}); submit the file instead."
                )
            try:
                body = response.read(self.max_bytes + 1)
            except (TimeoutError, socket.timeout) as exc:
                raise FetchError(f"Timed out reading '{url}'") from exc

        if len(body) > self.max_bytes:
            raise ValidationError(f"Page at '{url}' exceeds the {self.max_bytes} byte limit.")
        return body, media, charset

    @staticmethod
    def _to_plain_text(body: bytes, content_type: str, charset: str = "utf-8") -> tuple[str, str]:
        """Return (title, text); HTML is stripped of page chrome and flattened."""
        try:
            decoded = body.decode(charset, errors="replace")
        except LookupError:
            decoded = body.decode("utf-8", errors="replace")
        if content_type == "text/plain":
            return "", decoded

        soup = BeautifulSoup(decoded, "html.parser")
        title = soup.title.get_text(strip=True) if soup.title else ""
        for tag in soup.find_all(_DROP_TAGS):
            tag.decompose()
        return title, _markdown.handle(str(soup)).strip()


class _CheckedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Follow at most *max_redirects* hops, re-checking every target."""

    def __init__(self, max_redirects: int) -> None:
        self.max_redirects = max_redirects
        self.hops = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self.hops += 1
        if self.hops > self.max_redirects:
            raise ValidationError(
                f"'{req.full_url}' redirected more than {self.max_redirects} times."
            )
        PageFetcher._validate_scheme(newurl)
        PageFetcher._check_ssrf(newurl)
        return super().redirect_request(req, fp, code, msg, headers, newurl)
