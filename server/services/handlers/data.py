"""Data node handlers - Set Fields, Merge, No-Op."""

from typing import Any, Dict, List

from services.node_registry import HandlerContext


async def handle_set_fields(ctx: HandlerContext) -> Dict[str, Any]:
    """Write static fields onto the item.

    Parameters:
        fields: mapping of field name -> value
        keepInput: merge into a dict input instead of replacing it (default True)
    """
    fields = ctx.parameters.get("fields") or {}
    if not isinstance(fields, dict):
        raise ValueError("setFields 'fields' parameter must be an object")

    keep_input = ctx.parameters.get("keepInput", True)
    result: Dict[str, Any] = {}
    if keep_input and isinstance(ctx.input, dict):
        result.update(ctx.input)
    result.update(fields)
    return result


async def handle_merge(ctx: HandlerContext) -> Any:
    """Combine the values delivered on several input ports.

    With more than one incoming edge the input is a dict keyed by the
    upstream "node:port" address.

    Modes:
        combine: shallow-merge dict values in key order (default)
        append: list of values in key order
    """
    mode = ctx.parameters.get("mode", "combine")
    data = ctx.input
    if not isinstance(data, dict):
        return data

    values: List[Any] = [data[port] for port in sorted(data)]

    if mode == "append":
        return values
    if mode == "combine":
        merged: Dict[str, Any] = {}
        for value in values:
            if isinstance(value, dict):
                merged.update(value)
        return merged
    raise ValueError(f"Unknown merge mode: {mode}")


async def handle_no_op(ctx: HandlerContext) -> Any:
    return ctx.input
