"""Connection diagnostics and recovery.

Main Components:
- probes: ordered environment probes classified into a DiagnosticResult
- recovery: confirmed auto-fix for a stale port-forwarding rule
"""

from .probes import (
    DiagnosticContext,
    DiagnosticProbe,
    classify,
    default_probes,
    firewall_rule_command,
    portproxy_delete_command,
    run_diagnostics,
)
from .recovery import apply_port_proxy_fix

__all__ = [
    "DiagnosticContext",
    "DiagnosticProbe",
    "classify",
    "default_probes",
    "firewall_rule_command",
    "portproxy_delete_command",
    "run_diagnostics",
    "apply_port_proxy_fix",
]
