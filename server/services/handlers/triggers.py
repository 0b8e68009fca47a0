"""Trigger node handlers - manual, webhook and schedule entry points.

Trigger nodes are start nodes: the coordinator hands them the run's input
payload, and they emit it unchanged for downstream nodes.
"""

from typing import Any, Dict

from core.logging import get_logger
from services.node_registry import HandlerContext

logger = get_logger(__name__)


async def handle_trigger_node(ctx: HandlerContext) -> Any:
    """Emit the trigger payload.

    Webhook payloads look like {body, headers, query, method}; schedule
    payloads carry {trigger, scheduledTime, scheduleId}. Manual runs emit
    whatever the caller passed, or an empty dict.
    """
    payload = ctx.input if ctx.input is not None else {}
    logger.debug("Trigger node fired", node_id=ctx.node_id, node_type=ctx.node_type,
                 run_id=ctx.run_id, mode=ctx.mode)
    return payload


def trigger_parameters(node_type: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    """Normalized registration parameters for a trigger node.

    Accepts both the editor's naming (httpMethod, rule) and plain names.
    """
    if node_type == "webhookTrigger":
        auth_config = parameters.get("authConfig") or {}
        return {
            "path": str(parameters.get("path") or "").strip("/"),
            "method": str(parameters.get("httpMethod") or parameters.get("method") or "POST").upper(),
            "auth_type": str(parameters.get("authentication") or parameters.get("authType") or "none").lower(),
            "auth_config": dict(auth_config),
        }
    if node_type == "scheduleTrigger":
        return {
            "cron_expression": parameters.get("rule") or parameters.get("cronExpression"),
            "timezone": parameters.get("timezone"),
        }
    return {}
