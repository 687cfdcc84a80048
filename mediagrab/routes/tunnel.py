import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response
from starlette.background import BackgroundTask

from mediagrab.const import MEDIA_TYPES
from mediagrab.processing.plan import DirectProxyPlan, TunnelPlan
from mediagrab.stream.process_runner import ExecutionError, ProcessRunner, UpstreamStatusError
from mediagrab.utils.crypto_utils import TunnelTokenError
from mediagrab.utils.http_utils import EnhancedStreamingResponse, content_disposition, get_client_ip

tunnel_router = APIRouter()
logger = logging.getLogger(__name__)


def tunnel_headers(plan: TunnelPlan) -> dict:
    extension = plan.filename.rsplit(".", 1)[-1].lower()
    headers = {
        "content-type": MEDIA_TYPES.get(extension, "application/octet-stream"),
        "content-disposition": content_disposition(plan.filename),
        "cross-origin-resource-policy": "cross-origin",
    }
    if not isinstance(plan, DirectProxyPlan):
        # transcoded output is not seekable
        headers["accept-ranges"] = "none"
    return headers


@tunnel_router.head("/tunnel")
@tunnel_router.get("/tunnel")
async def tunnel(request: Request, token: str = Query(..., description="Tunnel token issued by the API.")):
    """Produce the bytes for a tunnel issued by the resolution endpoint."""
    try:
        plan = request.app.state.tunnels.resolve(token, get_client_ip(request))
    except TunnelTokenError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)

    runner: ProcessRunner = request.app.state.runner
    headers = tunnel_headers(plan)
    is_proxy = isinstance(plan, DirectProxyPlan)

    if request.method == "HEAD":
        if not is_proxy:
            estimated = await runner.estimate_length(plan)
            if estimated:
                headers["estimated-content-length"] = str(estimated)
        return Response(headers=headers)

    range_header = request.headers.get("range") if is_proxy else None
    try:
        handle = await runner.open(plan, range_header=range_header)
    except UpstreamStatusError as e:
        status_code = e.status_code if 400 <= e.status_code < 600 else 502
        raise HTTPException(status_code=status_code, detail="Upstream refused the request")
    except ExecutionError as e:
        logger.error(f"Tunnel for {plan.filename} failed to start: {e}")
        raise HTTPException(status_code=502, detail="Failed to start processing")

    try:
        if is_proxy:
            headers.update(handle.headers)
        else:
            estimated = await runner.estimate_length(plan, handle.sources)
            if estimated:
                headers["estimated-content-length"] = str(estimated)
    except BaseException:
        await runner.close(handle)
        raise

    return EnhancedStreamingResponse(
        runner.stream(handle),
        status_code=handle.status_code,
        headers=headers,
        background=BackgroundTask(runner.close, handle),
    )
