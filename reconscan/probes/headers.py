"""
Passive response-header checks: missing hardening headers and
technology disclosure.
"""
import re
from typing import List

from ..cancellation import CancellationToken
from ..models import Finding, Severity
from .base import ClientFactory, default_client_factory, fetch

# header -> (severity, title, remediation)
SECURITY_HEADERS = {
    "content-security-policy": (
        Severity.MEDIUM,
        "Missing Content-Security-Policy header",
        "Define a Content-Security-Policy that restricts script and frame sources.",
    ),
    "x-frame-options": (
        Severity.LOW,
        "Missing X-Frame-Options header",
        "Send X-Frame-Options: DENY or a CSP frame-ancestors directive to prevent clickjacking.",
    ),
    "x-content-type-options": (
        Severity.LOW,
        "Missing X-Content-Type-Options header",
        "Send X-Content-Type-Options: nosniff.",
    ),
    "referrer-policy": (
        Severity.INFO,
        "Missing Referrer-Policy header",
        "Send Referrer-Policy: strict-origin-when-cross-origin or stricter.",
    ),
}

HSTS = (
    Severity.MEDIUM,
    "Missing Strict-Transport-Security header",
    "Send Strict-Transport-Security with a max-age of at least one year on HTTPS responses.",
)

VERSION_PATTERN = re.compile(r"\d+(\.\d+)+")


async def check_security_headers(
    target: str, token: CancellationToken, client_factory: ClientFactory = default_client_factory,
) -> List[Finding]:
    async with client_factory() as client:
        response = await fetch(client, target, token)

    expected = dict(SECURITY_HEADERS)
    if target.lower().startswith("https://"):
        expected["strict-transport-security"] = HSTS
    csp = response.headers.get("content-security-policy", "")
    if "frame-ancestors" in csp:
        expected.pop("x-frame-options")

    findings = []
    for header, (severity, title, remediation) in expected.items():
        if header in response.headers:
            continue
        findings.append(Finding(
            severity=severity,
            title=title,
            description=f"The response from {target} does not include the {header} header.",
            evidence=f"HTTP {response.status_code}, header absent: {header}",
            remediation=remediation,
        ))
    return findings


async def check_server_banner(
    target: str, token: CancellationToken, client_factory: ClientFactory = default_client_factory,
) -> List[Finding]:
    async with client_factory() as client:
        response = await fetch(client, target, token)

    findings = []
    server = response.headers.get("server", "")
    if server and VERSION_PATTERN.search(server):
        findings.append(Finding(
            severity=Severity.LOW,
            title="Server version disclosed",
            description="The Server header reveals software and version, which helps attackers pick exploits.",
            evidence=f"Server: {server}",
            remediation="Strip version details from the Server header.",
        ))
    powered_by = response.headers.get("x-powered-by", "")
    if powered_by:
        findings.append(Finding(
            severity=Severity.LOW,
            title="Technology disclosed via X-Powered-By",
            description="The X-Powered-By header reveals the application framework.",
            evidence=f"X-Powered-By: {powered_by}",
            remediation="Remove the X-Powered-By header.",
        ))
    return findings
