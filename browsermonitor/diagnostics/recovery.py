"""Automatic remedy for a stale port-forwarding rule."""

import logging

from ..bridge.resolver import NetworkBridgeResolver
from ..models import DiagnosticResult, FixOutcome, ForwardType

logger = logging.getLogger(__name__)


async def apply_port_proxy_fix(resolver: NetworkBridgeResolver, result: DiagnosticResult, port: int) -> FixOutcome:
    """Remove the stale forwarding rule and terminate managed browsers.

    Only call this after the operator confirmed the fix. Nothing is done
    unless ``result`` reports a port-proxy conflict.

    Args:
        resolver: Bridge resolver for the host
        result: Diagnostics that found the conflict
        port: Port whose rule is removed

    Returns:
        FixOutcome describing what was changed
    """
    outcome = FixOutcome(port=port)
    if not result.has_port_proxy_conflict:
        outcome.errors.append("No port proxy conflict to fix")
        return outcome

    removed = True
    for forward_type in (ForwardType.V4TOV4, ForwardType.V4TOV6):
        removed &= await resolver.inspector.delete_forwarding_rule(port, forward_type)
    outcome.rule_removed = removed
    if not removed:
        outcome.errors.append(f"Could not delete forwarding rule for port {port} (administrator rights needed?)")

    try:
        outcome.terminated_pids = await resolver.terminate_managed_instances()
    except Exception as e:
        logger.error(f"Failed to terminate managed browsers: {e}")
        outcome.errors.append(f"Could not terminate managed browsers: {e}")

    logger.info(
        f"Port proxy fix on {port}: rule_removed={outcome.rule_removed}, "
        f"terminated={outcome.terminated_pids}"
    )
    return outcome
