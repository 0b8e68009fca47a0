"""Utility node handlers - Console, Wait."""

import asyncio
from typing import Any

from services.node_registry import HandlerContext

_UNIT_SECONDS = {
    "milliseconds": 0.001,
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
}


async def handle_console(ctx: HandlerContext) -> Any:
    """Log the node input and pass it through.

    Parameters:
        label: optional prefix for the log line
        level: debug | info | warning (default info)
    """
    label = ctx.parameters.get("label") or ctx.node_name
    level = str(ctx.parameters.get("level", "info")).lower()
    log = getattr(ctx.logger, level, ctx.logger.info)
    log("Console output", label=label, value=ctx.input)
    return ctx.input


async def handle_wait(ctx: HandlerContext) -> Any:
    """Sleep for a duration, then pass the input through."""
    try:
        duration = float(ctx.parameters.get("duration", 1))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid wait duration: {ctx.parameters.get('duration')!r}")

    unit = ctx.parameters.get("unit", "seconds")
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"Unknown wait unit: {unit}")

    wait_seconds = max(duration, 0) * _UNIT_SECONDS[unit]
    ctx.logger.info("Waiting", wait_seconds=wait_seconds)
    await asyncio.sleep(wait_seconds)
    return ctx.input
