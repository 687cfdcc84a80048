import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from mediagrab.configs import settings
from mediagrab.processing import errors
from mediagrab.processing.errors import ResolutionError
from mediagrab.processing.plan import ErrorPlan
from mediagrab.processing.plan_builder import PlanOptions, build
from mediagrab.processing.response import encode
from mediagrab.processing.url import expand_short_link, extract
from mediagrab.resolvers.base import ResolverError
from mediagrab.resolvers.factory import ResolverFactory
from mediagrab.schemas import ErrorResponse, ProcessRequest
from mediagrab.utils.http_utils import get_base_url, get_client_ip

api_router = APIRouter()
logger = logging.getLogger(__name__)


def plan_options(body: ProcessRequest) -> PlanOptions:
    local_processing = body.local_processing
    if settings.force_local_processing == "always":
        local_processing = True
    elif settings.force_local_processing == "session" and settings.api_password:
        local_processing = True

    return PlanOptions(
        download_mode=body.download_mode,
        audio_format=body.audio_format,
        audio_bitrate=body.audio_bitrate,
        full_audio=body.full_audio,
        allow_h265=body.allow_h265,
        always_proxy=body.always_proxy,
        disable_metadata=body.disable_metadata,
        convert_gif=body.convert_gif,
        local_processing=local_processing,
        default_audio_format=settings.default_audio_format,
        duration_limit=settings.duration_limit,
    )


def _error_plan(error: ResolutionError) -> ErrorPlan:
    return ErrorPlan(code=error.code, context=error.context, critical=error.critical)


@api_router.post("/")
async def process(body: ProcessRequest, request: Request):
    """Resolve a link and answer with a redirect, tunnel, picker, local-processing or error response."""
    try:
        options = plan_options(body)
        match = extract(body.url, settings.enabled_services)
        if not isinstance(match, ResolutionError):
            match = await expand_short_link(match)
        if isinstance(match, ResolutionError):
            plan = _error_plan(match)
        else:
            try:
                resolver = ResolverFactory.get_resolver(match.service)
            except ResolverError as e:
                plan = _error_plan(errors.resolution_error(e.code))
            else:
                metadata = await resolver.resolve(match, options)
                plan = build(metadata, options)

        tunnels = request.app.state.tunnels
        base_url = get_base_url(request)
        client_ip = get_client_ip(request)
        response = encode(plan, lambda tunnel_plan: tunnels.create(tunnel_plan, base_url, client_ip))
    except Exception as e:
        logger.exception(f"Failed to process {body.url}: {e}")
        raise HTTPException(status_code=500, detail="Failed to process the request")

    status_code = 400 if isinstance(response, ErrorResponse) else 200
    return JSONResponse(content=response.model_dump(by_alias=True, exclude_none=True), status_code=status_code)
