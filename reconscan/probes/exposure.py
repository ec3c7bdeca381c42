"""
Exposure checks: permissive CORS and well-known sensitive files.
"""
import re
from typing import Callable, List, Tuple

import httpx

from ..cancellation import CancellationToken
from ..models import Finding, Severity
from .base import ClientFactory, default_client_factory, fetch, join_path

CORS_TEST_ORIGINS = ("https://evil.reconscan.example", "null")

ENV_LINE = re.compile(r"^[A-Z][A-Z0-9_]*=", re.MULTILINE)

# path -> (severity, title, signature check on the response)
SENSITIVE_FILES: Tuple[Tuple[str, Severity, str, Callable[[httpx.Response], bool]], ...] = (
    (".env", Severity.CRITICAL, "Environment file exposed",
     lambda r: bool(ENV_LINE.search(r.text))),
    (".git/HEAD", Severity.HIGH, "Git repository exposed",
     lambda r: r.text.startswith("ref: refs/")),
    (".git/config", Severity.HIGH, "Git configuration exposed",
     lambda r: "[core]" in r.text),
    (".DS_Store", Severity.LOW, "macOS .DS_Store file exposed",
     lambda r: r.content[4:8] == b"Bud1"),
    ("phpinfo.php", Severity.MEDIUM, "phpinfo() page exposed",
     lambda r: "phpinfo()" in r.text or "PHP Version" in r.text),
    ("server-status", Severity.MEDIUM, "Apache server-status exposed",
     lambda r: "Apache Server Status" in r.text),
)


async def check_cors(
    target: str, token: CancellationToken, client_factory: ClientFactory = default_client_factory,
) -> List[Finding]:
    findings = []
    async with client_factory() as client:
        for origin in CORS_TEST_ORIGINS:
            response = await fetch(client, target, token, headers={"Origin": origin})
            acao = response.headers.get("access-control-allow-origin", "")
            acac = response.headers.get("access-control-allow-credentials", "").lower()

            if acao not in (origin, "*"):
                continue
            if acac == "true":
                severity = Severity.HIGH
                description = "An arbitrary origin is allowed together with credentials."
            elif acao == "*":
                continue
            else:
                severity = Severity.MEDIUM
                description = "An arbitrary origin is reflected in Access-Control-Allow-Origin."
            findings.append(Finding(
                severity=severity,
                title="CORS misconfiguration",
                description=description,
                evidence=f"Origin: {origin} -> ACAO: {acao} | ACAC: {acac or 'absent'}",
                remediation=(
                    "Validate Origin against an explicit server-side allowlist and never "
                    "combine a reflected or wildcard origin with credentials."
                ),
            ))
            break
    return findings


async def check_sensitive_files(
    target: str, token: CancellationToken, client_factory: ClientFactory = default_client_factory,
) -> List[Finding]:
    findings = []
    async with client_factory() as client:
        for path, severity, title, looks_real in SENSITIVE_FILES:
            url = join_path(target, path)
            response = await fetch(client, url, token)
            if response.status_code != 200 or not looks_real(response):
                continue
            findings.append(Finding(
                severity=severity,
                title=title,
                description=f"{path} is publicly readable.",
                evidence=f"GET {url} -> HTTP 200 ({len(response.content)} bytes)",
                remediation=f"Block access to {path} at the web server and remove it from the document root.",
            ))
    return findings
