"""Node handlers package.

Handlers are plain `async def handler(ctx: HandlerContext)` functions organized
by category:
- triggers.py: Manual, Webhook and Schedule trigger entry points
- data.py: Set Fields, Merge, No-Op
- utility.py: Console, Wait
- http.py: HTTP Request
"""

from constants import MANUAL_TRIGGER_TYPE, SCHEDULE_TRIGGER_TYPE, WEBHOOK_TRIGGER_TYPE

from .data import handle_merge, handle_no_op, handle_set_fields
from .http import handle_http_request
from .triggers import handle_trigger_node, trigger_parameters
from .utility import handle_console, handle_wait

# node_type -> (handler, description, required params, is_trigger)
BUILTIN_HANDLERS = {
    MANUAL_TRIGGER_TYPE: (handle_trigger_node, "Start a run on demand", [], True),
    WEBHOOK_TRIGGER_TYPE: (handle_trigger_node, "Start a run from an inbound HTTP call", ["path"], True),
    SCHEDULE_TRIGGER_TYPE: (handle_trigger_node, "Start a run on a cron schedule", [], True),
    'setFields': (handle_set_fields, "Set static fields on the item", [], False),
    'merge': (handle_merge, "Combine values from several inputs", [], False),
    'noOp': (handle_no_op, "Pass the input through unchanged", [], False),
    'console': (handle_console, "Log the input", [], False),
    'wait': (handle_wait, "Pause before continuing", [], False),
    'httpRequest': (handle_http_request, "Make an HTTP request", ["url"], False),
}


def register_builtin_handlers(registry) -> None:
    for node_type, (handler, description, required, is_trigger) in BUILTIN_HANDLERS.items():
        registry.register(
            node_type,
            handler,
            description=description,
            required_params=required,
            is_trigger=is_trigger,
        )


__all__ = [
    "BUILTIN_HANDLERS",
    "register_builtin_handlers",
    "trigger_parameters",
    "handle_trigger_node",
    "handle_set_fields",
    "handle_merge",
    "handle_no_op",
    "handle_console",
    "handle_wait",
    "handle_http_request",
]
