"""Node Handler Registry - maps node type strings to handlers.

Uses a registry pattern for clean handler dispatch without if-else chains.
Lookup is by exact string match; registering a type again replaces the
previous handler.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Union

import httpx
import structlog

from core.logging import get_logger
from models.graph import Node
from services.execution.errors import HandlerNotFoundError

logger = get_logger(__name__)


class PortOutputs(dict):
    """Handler return value addressing individual output ports.

    A handler returning PortOutputs({"true": x, "false": y}) emits x on edges
    leaving port "true" and y on edges leaving port "false". Ports not present
    receive None. Any other return value is emitted on every port.
    """


class CredentialResolver(Protocol):
    """Resolves a credential id to its secret map."""

    async def resolve(self, credential_id: str) -> Dict[str, Any]:
        ...


class InMemoryCredentialResolver:
    """Credential resolver backed by a dict. Used by tests and memory storage."""

    def __init__(self, secrets: Optional[Dict[str, Dict[str, Any]]] = None):
        self._secrets: Dict[str, Dict[str, Any]] = dict(secrets or {})

    def set(self, credential_id: str, secret: Dict[str, Any]) -> None:
        self._secrets[credential_id] = dict(secret)

    def remove(self, credential_id: str) -> bool:
        return self._secrets.pop(credential_id, None) is not None

    async def resolve(self, credential_id: str) -> Dict[str, Any]:
        if credential_id not in self._secrets:
            raise KeyError(f"Credential not found: {credential_id}")
        return dict(self._secrets[credential_id])


@dataclass
class HandlerContext:
    """Everything a handler may touch. Handlers never reach for global state."""
    node_id: str
    node_type: str
    node_name: str
    parameters: Dict[str, Any]
    input: Any
    run_id: str
    workflow_id: str
    mode: str
    http: httpx.AsyncClient
    logger: Any
    credentials: Dict[str, str] = field(default_factory=dict)
    credential_resolver: Optional[CredentialResolver] = None

    async def get_credential(self, slot: str) -> Dict[str, Any]:
        """Resolve the credential bound to `slot` on this node."""
        credential_id = self.credentials.get(slot)
        if not credential_id:
            raise KeyError(f"No credential bound to slot '{slot}' on node {self.node_id}")
        if self.credential_resolver is None:
            raise KeyError("No credential resolver configured")
        return await self.credential_resolver.resolve(credential_id)

    def has_credential(self, slot: str) -> bool:
        return bool(self.credentials.get(slot))


class NodeHandler(Protocol):
    async def execute(self, ctx: HandlerContext) -> Any:
        ...


HandlerFunc = Callable[[HandlerContext], Awaitable[Any]]


class FunctionHandler:
    """Adapts a plain `async def handler(ctx)` to the NodeHandler protocol."""

    def __init__(self, func: HandlerFunc):
        self.func = func

    async def execute(self, ctx: HandlerContext) -> Any:
        return await self.func(ctx)

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__name__', self.func)!r})"


@dataclass
class HandlerRegistration:
    node_type: str
    handler: NodeHandler
    description: str = ""
    required_params: List[str] = field(default_factory=list)
    is_trigger: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "description": self.description,
            "required_params": list(self.required_params),
            "is_trigger": self.is_trigger,
        }


class NodeHandlerRegistry:
    """Executes nothing itself; resolves node types to handlers and builds contexts."""

    def __init__(
        self,
        credential_resolver: Optional[CredentialResolver] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 30.0,
    ):
        self.credential_resolver = credential_resolver
        self._http = http_client
        self._owns_http = http_client is None
        self._http_timeout = http_timeout
        self._handlers: Dict[str, HandlerRegistration] = {}

    def register(
        self,
        node_type: str,
        handler: Union[NodeHandler, HandlerFunc],
        description: str = "",
        required_params: Optional[Iterable[str]] = None,
        is_trigger: bool = False,
    ) -> None:
        if not node_type:
            raise ValueError("node_type must be a non-empty string")
        if not hasattr(handler, "execute"):
            if not callable(handler):
                raise TypeError(f"Handler for {node_type} is neither a NodeHandler nor callable")
            handler = FunctionHandler(handler)

        if node_type in self._handlers:
            logger.info("Replacing node handler", node_type=node_type)

        self._handlers[node_type] = HandlerRegistration(
            node_type=node_type,
            handler=handler,
            description=description,
            required_params=list(required_params or []),
            is_trigger=is_trigger,
        )

    def unregister(self, node_type: str) -> bool:
        return self._handlers.pop(node_type, None) is not None

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._handlers

    def get_registration(self, node_type: str) -> HandlerRegistration:
        registration = self._handlers.get(node_type)
        if registration is None:
            raise HandlerNotFoundError(node_type)
        return registration

    def resolve(self, node_type: str) -> NodeHandler:
        return self.get_registration(node_type).handler

    def missing_params(self, node_type: str, parameters: Dict[str, Any]) -> List[str]:
        """Required parameters that are absent, None or empty string."""
        registration = self.get_registration(node_type)
        return [
            name for name in registration.required_params
            if parameters.get(name) is None or parameters.get(name) == ""
        ]

    def list_types(self) -> List[str]:
        return sorted(self._handlers)

    def list_specs(self) -> List[Dict[str, Any]]:
        return [self._handlers[t].to_dict() for t in self.list_types()]

    @property
    def http(self) -> httpx.AsyncClient:
        """Shared HTTP client, created on first use."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._http_timeout)
            self._owns_http = True
        return self._http

    def build_context(self, node: Node, input_data: Any, run_id: str,
                      workflow_id: str, mode: str) -> HandlerContext:
        bound_logger = structlog.get_logger("handlers").bind(
            node_id=node.id, node_type=node.type, run_id=run_id,
        )
        return HandlerContext(
            node_id=node.id,
            node_type=node.type,
            node_name=node.display_name,
            parameters=dict(node.parameters),
            input=input_data,
            run_id=run_id,
            workflow_id=workflow_id,
            mode=mode,
            http=self.http,
            logger=bound_logger,
            credentials=dict(node.credentials),
            credential_resolver=self.credential_resolver,
        )

    async def close(self) -> None:
        if self._http is not None and self._owns_http and not self._http.is_closed:
            await self._http.aclose()
        self._http = None


def build_default_registry(
    credential_resolver: Optional[CredentialResolver] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    http_timeout: float = 30.0,
) -> NodeHandlerRegistry:
    """Registry populated with the built-in node types."""
    from services.handlers import register_builtin_handlers

    registry = NodeHandlerRegistry(
        credential_resolver=credential_resolver,
        http_client=http_client,
        http_timeout=http_timeout,
    )
    register_builtin_handlers(registry)
    logger.info("Node handler registry built", node_types=len(registry.list_types()))
    return registry
