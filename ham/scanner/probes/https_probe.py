# ham/scanner/probes/https_probe.py
"""
HTTPS fetch probe.

Issues one GET with httpx and inspects the answer for explicit censorship:

    - HTTP 451 (Unavailable For Legal Reasons)
    - a redirect to a known national filter page
    - a body that frames a known filter page (injected iframe)

Each of these raises BlockPageDetected and the result is recorded with
error=block_page. Redirects are not followed; the Location header is what
gets inspected.

Target params:
    url          full URL to fetch (defaults to https://host/)
    verify       verify TLS certificates (default True)
    user_agent   User-Agent header

Metadata:
    status_code, location, http_version
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from ham.errors import BlockPageDetected, ProbeConnectionError, ProbeProtocolError, ProbeTimeout
from ham.scanner.base import BaseProbe, ErrorKind, ProbeResult, TestTarget, classify_exception

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"

# Filter landing pages seen in the wild (redirect targets / iframe sources)
BLOCK_PAGE_MARKERS = (
    "10.10.34.34",
    "10.10.34.35",
    "10.10.34.36",
    "peyvandha.ir",
    "warning.rt.ru",
    "blocked.netbynet.ru",
    "195.175.254.2",
    "internet-positif.info",
)

BODY_SCAN_LIMIT = 8192


def find_block_marker(text: Optional[str]) -> Optional[str]:
    """First known filter marker contained in text, if any."""
    if not text:
        return None
    lowered = text.lower()
    for marker in BLOCK_PAGE_MARKERS:
        if marker in lowered:
            return marker
    return None


def _transport_failure(exc: httpx.TransportError) -> Exception:
    """Re-raise httpx transport errors that carry no socket cause as probe errors."""
    kind, _ = classify_exception(exc)
    if kind is not ErrorKind.PROBE_ERROR:
        return exc
    if isinstance(exc, httpx.ConnectError):
        return ProbeConnectionError(str(exc) or "connect failed", kind="unreachable")
    if isinstance(exc, (httpx.ReadError, httpx.WriteError)):
        return ProbeConnectionError(str(exc) or "connection dropped", kind="reset")
    return ProbeProtocolError(str(exc) or type(exc).__name__)


class HTTPSProbe(BaseProbe):
    """GET one URL and flag block pages. Pass `transport` to inject httpx.MockTransport."""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return "https"

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        url = target.param("url") or f"https://{target.host}/"
        headers = {"User-Agent": target.param("user_agent", DEFAULT_USER_AGENT)}

        start = time.monotonic()
        try:
            with httpx.Client(
                timeout=httpx.Timeout(timeout),
                follow_redirects=False,
                verify=bool(target.param("verify", True)),
                transport=self._transport,
            ) as client:
                resp = client.get(url, headers=headers)
                latency_ms = (time.monotonic() - start) * 1000
                body = resp.text[:BODY_SCAN_LIMIT] if resp.status_code < 300 else ""
        except httpx.TimeoutException as e:
            raise ProbeTimeout(f"GET {url} timed out after {timeout:.1f}s") from e
        except httpx.TransportError as e:
            failure = _transport_failure(e)
            if failure is e:
                raise
            raise failure from e

        location = resp.headers.get("location")
        if resp.status_code == 451:
            raise BlockPageDetected(f"HTTP 451 from {url}", evidence="status 451")
        if resp.is_redirect:
            marker = find_block_marker(location)
            if marker:
                raise BlockPageDetected(f"redirected to filter page {location}", evidence=marker)
        marker = find_block_marker(body)
        if marker:
            raise BlockPageDetected(f"filter page content in response from {url}", evidence=marker)
        if resp.status_code >= 500:
            raise ProbeProtocolError(f"HTTP {resp.status_code} from {url}")

        return self.ok(
            target,
            latency_ms,
            url=url,
            status_code=resp.status_code,
            location=location,
            http_version=resp.http_version,
        )
