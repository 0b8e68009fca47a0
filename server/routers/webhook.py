"""Dynamic webhook endpoint router for incoming HTTP requests.

Every registered webhookTrigger path is served here. The request is handed to
TriggerManager.execute_webhook(), which matches path, method and auth, then
runs the owning workflow and reports the outcome.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import ORJSONResponse

from core.container import container
from core.logging import get_logger
from services.triggers import TriggerManager

logger = get_logger(__name__)
router = APIRouter(tags=["webhook"])


async def _read_body(request: Request):
    """JSON body when declared as JSON, otherwise the decoded text (or None)."""
    body = await request.body()
    if not body:
        return None

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return await request.json()
        except ValueError:
            logger.debug("Webhook body is not valid JSON, passing raw text", path=request.url.path)
    return body.decode("utf-8", errors="replace")


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def handle_webhook(
    path: str,
    request: Request,
    trigger_manager: TriggerManager = Depends(lambda: container.trigger_manager())
):
    """Handle incoming webhook requests."""
    logger.info("Webhook received", method=request.method, path=path)

    result = await trigger_manager.execute_webhook(
        path=path,
        method=request.method,
        headers=dict(request.headers),
        body=await _read_body(request),
        query=dict(request.query_params),
    )

    return ORJSONResponse(content=result.to_dict(), status_code=result.status_code)
