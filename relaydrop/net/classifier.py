"""Turn backend error messages into categories and user guidance."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ErrorPattern:
    category: str
    keywords: tuple[str, ...]
    severity: str
    retryable: bool
    user_action: str


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    category: str
    severity: str
    retryable: bool
    user_action: str
    detail: str


# Checked in order; the first keyword hit wins.
PATTERNS: tuple[ErrorPattern, ...] = (
    ErrorPattern(
        "corporate_proxy",
        ("proxy authentication", "proxy required", "407", "proxy error"),
        "high",
        False,
        "A corporate proxy is in the way. Ask IT about file transfer permissions or use another network.",
    ),
    ErrorPattern(
        "ssl_mitm",
        ("certificate", "ssl", "tls handshake"),
        "high",
        False,
        "TLS traffic appears to be inspected. Prefer end-to-end encrypted transports.",
    ),
    ErrorPattern(
        "deep_packet_inspection",
        ("connection reset", "connection interrupted", "unexpected eof", "broken pipe"),
        "high",
        False,
        "The network seems to inspect traffic. Switching to a different transport.",
    ),
    ErrorPattern(
        "firewall_port_block",
        ("connection refused", "no route to host", "network unreachable", "network is unreachable", "port unreachable"),
        "medium",
        False,
        "The network blocks peer-to-peer ports. Trying transports on standard web ports.",
    ),
    ErrorPattern(
        "dns_filtering",
        ("no such host", "name or service not known", "name resolution", "nodename nor servname", "getaddrinfo"),
        "medium",
        True,
        "DNS lookups are failing or filtered. Trying alternative connection methods.",
    ),
    ErrorPattern(
        "network_throttling",
        ("timeout", "timed out", "deadline exceeded", "did not answer"),
        "low",
        True,
        "The network is slow or throttled. Retrying may help.",
    ),
    ErrorPattern(
        "application_firewall",
        ("forbidden", "blocked", "policy violation", "content filtered"),
        "high",
        False,
        "An application firewall blocks file transfers. Try a web-based transport or another network.",
    ),
    ErrorPattern(
        "backend_unavailable",
        ("not available", "unavailable", "not configured", "not set up"),
        "medium",
        True,
        "The transport is not ready on this machine. Check its configuration.",
    ),
)

NETWORK_GUIDANCE = {
    "corporate": "Corporate networks often restrict transfers; a mobile hotspot is a quick workaround.",
    "restrictive": "Only web ports look reachable; relay transports on port 443 have the best chance.",
    "mobile": "Mobile links can be slow; keep the app open until the transfer completes.",
}


def classify_error(error: BaseException | str) -> ErrorClassification:
    """Match ``error`` against :data:`PATTERNS`."""

    detail = str(error)
    text = detail.lower()
    if isinstance(error, TimeoutError) and not text:
        text = "timeout"
    for pattern in PATTERNS:
        if any(keyword in text for keyword in pattern.keywords):
            return ErrorClassification(
                category=pattern.category,
                severity=pattern.severity,
                retryable=pattern.retryable,
                user_action=pattern.user_action,
                detail=detail,
            )
    return ErrorClassification(
        category="unknown",
        severity="medium",
        retryable=True,
        user_action="Network issue detected. Trying alternative connection methods.",
        detail=detail,
    )


def guidance_for(error: BaseException | str, network_type: object = None) -> str:
    """User-facing guidance combining the error category with the network type."""

    classification = classify_error(error)
    key = str(getattr(network_type, "value", network_type) or "").lower()
    extra = NETWORK_GUIDANCE.get(key)
    if extra:
        return f"{classification.user_action} {extra}"
    return classification.user_action
