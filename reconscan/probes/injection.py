"""
Active injection checks against query parameters.

Each check mutates one parameter at a time and looks for a signature in the
response that was absent from the unmodified baseline. When the target URL
has no query string a small set of commonly used parameter names is tried.
"""
import uuid
from typing import List

from ..cancellation import CancellationToken
from ..models import Finding, Severity
from .base import ClientFactory, default_client_factory, fetch, is_html, params_to_test, with_param

SQL_PAYLOADS = ("'", "\"", "')")
SQL_ERROR_SIGNATURES = (
    "you have an error in your sql syntax",
    "warning: mysql",
    "unclosed quotation mark after the character string",
    "quoted string not properly terminated",
    "pg::syntaxerror",
    "syntax error at or near",
    "sqlite3.operationalerror",
    "sqlstate[",
    "ora-01756",
)

TRAVERSAL_PAYLOADS = (
    "../../../../../../etc/passwd",
    "....//....//....//....//etc/passwd",
    "..\\..\\..\\..\\windows\\win.ini",
)
TRAVERSAL_SIGNATURES = ("root:x:0:0:", "[fonts]", "[extensions]")

REDIRECT_PARAMS = ("next", "url", "redirect", "return", "returnTo", "dest")
REDIRECT_TARGET = "https://redirect.reconscan.example/"


def _new_signatures(body: str, baseline: str, signatures) -> List[str]:
    body, baseline = body.lower(), baseline.lower()
    return [s for s in signatures if s.lower() in body and s.lower() not in baseline]


async def check_sql_errors(
    target: str, token: CancellationToken, client_factory: ClientFactory = default_client_factory,
) -> List[Finding]:
    findings = []
    async with client_factory() as client:
        baseline = (await fetch(client, target, token)).text
        for param in params_to_test(target, ["id"]):
            for payload in SQL_PAYLOADS:
                url = with_param(target, param, payload)
                response = await fetch(client, url, token)
                matched = _new_signatures(response.text, baseline, SQL_ERROR_SIGNATURES)
                if not matched:
                    continue
                findings.append(Finding(
                    severity=Severity.HIGH,
                    title=f"SQL error triggered via parameter '{param}'",
                    description="Injecting a quote produced a database error message, suggesting SQL injection.",
                    evidence=f"GET {url} -> '{matched[0]}'",
                    remediation="Use parameterized queries and stop returning database errors to clients.",
                ))
                break
    return findings


async def check_path_traversal(
    target: str, token: CancellationToken, client_factory: ClientFactory = default_client_factory,
) -> List[Finding]:
    findings = []
    async with client_factory() as client:
        baseline = (await fetch(client, target, token)).text
        for param in params_to_test(target, ["file", "path"]):
            for payload in TRAVERSAL_PAYLOADS:
                url = with_param(target, param, payload)
                response = await fetch(client, url, token)
                matched = _new_signatures(response.text, baseline, TRAVERSAL_SIGNATURES)
                if not matched:
                    continue
                findings.append(Finding(
                    severity=Severity.CRITICAL,
                    title=f"Path traversal via parameter '{param}'",
                    description="A traversal payload returned the contents of a system file.",
                    evidence=f"GET {url} -> '{matched[0]}'",
                    remediation="Resolve file names against an allowlist and never join user input into paths.",
                ))
                break
    return findings


async def check_open_redirect(
    target: str, token: CancellationToken, client_factory: ClientFactory = default_client_factory,
) -> List[Finding]:
    findings = []
    async with client_factory() as client:
        for param in params_to_test(target, list(REDIRECT_PARAMS)):
            url = with_param(target, param, REDIRECT_TARGET)
            response = await fetch(client, url, token)
            location = response.headers.get("location", "")
            if response.is_redirect and location.startswith(REDIRECT_TARGET):
                findings.append(Finding(
                    severity=Severity.MEDIUM,
                    title=f"Open redirect via parameter '{param}'",
                    description="The application redirects to an arbitrary external URL taken from the request.",
                    evidence=f"GET {url} -> HTTP {response.status_code} Location: {location}",
                    remediation="Only redirect to relative paths or hosts on an explicit allowlist.",
                ))
    return findings


async def check_reflected_xss(
    target: str, token: CancellationToken, client_factory: ClientFactory = default_client_factory,
) -> List[Finding]:
    findings = []
    async with client_factory() as client:
        for param in params_to_test(target, ["q"]):
            marker = f"<rcx{uuid.uuid4().hex[:8]}>"
            url = with_param(target, param, marker)
            response = await fetch(client, url, token)
            if is_html(response) and marker in response.text:
                findings.append(Finding(
                    severity=Severity.HIGH,
                    title=f"Reflected XSS via parameter '{param}'",
                    description="An HTML tag sent in the parameter is echoed back without encoding.",
                    evidence=f"GET {url} -> marker {marker} reflected unescaped",
                    remediation="HTML-encode untrusted data on output and set a restrictive Content-Security-Policy.",
                ))
    return findings
