"""
Built-in probe library.

Detection here is deliberately simple signature matching; the engine treats
these exactly like any externally supplied probe.
"""
import functools
from typing import Optional

from ..registry import ProbeDescriptor, ProbeRegistry
from .base import ClientFactory, default_client_factory
from .exposure import check_cors, check_sensitive_files
from .headers import check_security_headers, check_server_banner
from .injection import check_open_redirect, check_path_traversal, check_reflected_xss, check_sql_errors

# (name, category, check, description), in dispatch order
BUILTIN_PROBES = (
    ("security-headers", "headers", check_security_headers, "Missing HTTP hardening headers"),
    ("server-banner", "headers", check_server_banner, "Server and framework version disclosure"),
    ("cors-misconfig", "cors", check_cors, "Arbitrary origins allowed by CORS"),
    ("sensitive-files", "exposure", check_sensitive_files, "Publicly readable .env, .git and status pages"),
    ("sql-error", "injection", check_sql_errors, "Error-based SQL injection"),
    ("path-traversal", "injection", check_path_traversal, "Directory traversal to system files"),
    ("reflected-xss", "injection", check_reflected_xss, "Unencoded reflection of HTML in responses"),
    ("open-redirect", "redirect", check_open_redirect, "Redirects to attacker-controlled URLs"),
)


def build_default_registry(
    client_factory: Optional[ClientFactory] = None, timeout: float = 30.0,
) -> ProbeRegistry:
    client_factory = client_factory or default_client_factory
    registry = ProbeRegistry()
    for name, category, check, description in BUILTIN_PROBES:
        registry.register(ProbeDescriptor(
            name=name,
            category=category,
            timeout=timeout,
            run=functools.partial(check, client_factory=client_factory),
            description=description,
        ))
    return registry
