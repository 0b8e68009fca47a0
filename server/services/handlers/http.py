"""HTTP node handlers - HTTP Request."""

import json
from typing import Any, Dict, Optional, Tuple

import httpx

from core.logging import get_logger
from services.node_registry import HandlerContext

logger = get_logger(__name__)

CREDENTIAL_SLOT = "httpAuth"


def _parse_mapping(value: Any, name: str) -> Dict[str, Any]:
    """Accept a dict or a JSON object string (the editor stores both)."""
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, json.JSONDecodeError):
        raise ValueError(f"'{name}' must be a JSON object")
    if not isinstance(parsed, dict):
        raise ValueError(f"'{name}' must be a JSON object")
    return parsed


async def _resolve_auth(ctx: HandlerContext, headers: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """Apply the node's httpAuth credential, if bound.

    Secret shapes:
        {"token": "..."}                       -> Authorization: Bearer
        {"username": "...", "password": "..."} -> HTTP basic
        {"name": "X-Key", "value": "..."}      -> custom header
    """
    if not ctx.has_credential(CREDENTIAL_SLOT):
        return None

    secret = await ctx.get_credential(CREDENTIAL_SLOT)
    if secret.get("token"):
        headers["Authorization"] = f"Bearer {secret['token']}"
        return None
    if "username" in secret:
        return secret["username"], secret.get("password", "")
    if secret.get("name"):
        headers[secret["name"]] = secret.get("value", "")
        return None
    raise ValueError("Unsupported httpAuth credential shape")


async def handle_http_request(ctx: HandlerContext) -> Dict[str, Any]:
    """Make an HTTP request using the registry's shared client.

    Parameters:
        url (required), method (GET), headers, query, body, timeout,
        ignoreHttpErrors: return 4xx/5xx responses instead of failing

    Transport errors and error statuses raise, so retryOnFail applies to them.
    """
    params = ctx.parameters
    method = str(params.get("method", "GET")).upper()
    url = params.get("url", "")
    if not url:
        raise ValueError("URL is required")

    headers = dict(_parse_mapping(params.get("headers"), "headers"))
    query = _parse_mapping(params.get("query"), "query")
    auth = await _resolve_auth(ctx, headers)

    kwargs: Dict[str, Any] = {"headers": headers, "params": query}
    if auth:
        kwargs["auth"] = auth
    if params.get("timeout") is not None:
        kwargs["timeout"] = float(params["timeout"])

    body = params.get("body")
    if method in ("POST", "PUT", "PATCH", "DELETE") and body not in (None, ""):
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        else:
            try:
                kwargs["json"] = json.loads(body)
            except (TypeError, json.JSONDecodeError):
                kwargs["content"] = str(body)

    ctx.logger.info("HTTP request", method=method, url=url)
    response = await ctx.http.request(method, url, **kwargs)

    if response.status_code >= 400 and not params.get("ignoreHttpErrors", False):
        raise httpx.HTTPStatusError(
            f"HTTP {response.status_code} from {method} {url}",
            request=response.request,
            response=response,
        )

    try:
        data = response.json()
    except ValueError:
        data = response.text

    return {
        "status": response.status_code,
        "data": data,
        "headers": dict(response.headers),
        "url": str(response.url),
        "method": method,
    }
