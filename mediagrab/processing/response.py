"""
Maps a stream plan to the JSON response contract.

Tunnel URLs are minted through ``tunnel_factory`` so the encoder stays free of storage concerns.
"""

import logging
from typing import Callable

from mediagrab.processing.plan import (
    DirectProxyPlan,
    ErrorPlan,
    LocalProcessingPlan,
    PickerPlan,
    RedirectPlan,
    StreamPlan,
    TranscodeAudioPlan,
    TunnelPlan,
)
from mediagrab.schemas import (
    ApiResponse,
    ErrorResponse,
    LocalProcessingAudio,
    LocalProcessingResponse,
    PickerAudio,
    PickerItem,
    PickerResponse,
    RedirectResponse,
    TunnelResponse,
)

logger = logging.getLogger(__name__)

TunnelFactory = Callable[[TunnelPlan], str]


def encode(plan: StreamPlan, tunnel_factory: TunnelFactory) -> ApiResponse:
    if isinstance(plan, ErrorPlan):
        return encode_error(plan)
    if isinstance(plan, RedirectPlan):
        return RedirectResponse(url=plan.url, filename=plan.filename)
    if isinstance(plan, PickerPlan):
        return _encode_picker(plan, tunnel_factory)
    if isinstance(plan, LocalProcessingPlan):
        return _encode_local_processing(plan, tunnel_factory)
    if isinstance(plan, TunnelPlan):
        return TunnelResponse(url=tunnel_factory(plan), filename=plan.filename)
    raise TypeError(f"Cannot encode {type(plan).__name__}")


def encode_error(plan: ErrorPlan) -> ErrorResponse:
    if plan.critical:
        logger.critical(f"Critical resolution failure: {plan.code} {dict(plan.context)}")
    return ErrorResponse(code=plan.code, context=dict(plan.context) or None)


def _encode_picker(plan: PickerPlan, tunnel_factory: TunnelFactory) -> PickerResponse:
    items = []
    for item in plan.items:
        if isinstance(item.plan, DirectProxyPlan):
            url = item.plan.inputs[0].url
        else:
            url = tunnel_factory(item.plan)
        items.append(PickerItem(type=item.type, url=url))

    audio = None
    if plan.audio is not None:
        audio = PickerAudio(url=tunnel_factory(plan.audio), filename=plan.audio.filename)
    return PickerResponse(items=items, audio=audio)


def _encode_local_processing(plan: LocalProcessingPlan, tunnel_factory: TunnelFactory) -> LocalProcessingResponse:
    inner = plan.plan
    tunnels = [
        tunnel_factory(
            DirectProxyPlan(inputs=(plan_input,), filename=f"{inner.filename}.part{index}", service=inner.service)
        )
        for index, plan_input in enumerate(inner.inputs)
    ]

    audio = None
    if isinstance(inner, TranscodeAudioPlan):
        output_format = inner.output_format
        audio = LocalProcessingAudio(format=output_format.container, bitrate=output_format.bitrate, copy=output_format.copy)

    return LocalProcessingResponse(
        type=plan.processing_type,
        url=tunnels[0],
        filename=inner.filename,
        tunnel=tunnels,
        audio=audio,
    )
