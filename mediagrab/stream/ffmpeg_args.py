"""
ffmpeg argument lists, built as a pure function of a stream plan.

Output always goes to stdout (``pipe:1``) so the runner can forward it as it is produced.
"""

import re
from typing import List, Mapping, Optional, Sequence

from mediagrab.const import METADATA_TAGS
from mediagrab.processing.formats import AUDIO_FORMATS
from mediagrab.processing.plan import (
    EnhanceVideoPlan,
    MergePlan,
    RemuxPlan,
    TranscodeAudioPlan,
    TranscodeGifPlan,
    TunnelPlan,
)

OUTPUT_TARGET = "pipe:1"

IMAGE_CONTAINERS = frozenset({"jpg", "jpeg", "png", "webp", "heic"})

# muxer names for containers whose ffmpeg name differs
MUXERS = {
    "m4a": "ipod",
    "mkv": "matroska",
}

# fragmented output is required to write mp4-family containers to a pipe
FRAGMENTED_MOVFLAGS = {
    "mp4": "faststart+frag_keyframe+empty_moov",
    "mov": "frag_keyframe+empty_moov",
    "m4a": "frag_keyframe+empty_moov",
}

GIF_FILTER = "scale=-1:-1:flags=lanczos,split[s0][s1];[s0]palettegen[p];[s1][p]paletteuse"

_CONTROL_CHARS = re.compile(r"[\u0000-\u001f\u007f]")


class MetadataTagError(ValueError):
    """Raised when a plan asks to embed a metadata tag outside the allow-list."""


def is_remote(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def to_raw_headers(headers: Mapping[str, str]) -> str:
    return "".join(f"{key}: {value}\r\n" for key, value in headers.items())


def metadata_args(tags: Mapping[str, str]) -> List[str]:
    args = []
    for name, value in tags.items():
        if name not in METADATA_TAGS:
            raise MetadataTagError(f"{name} metadata tag is not supported")
        args.extend(["-metadata", f"{name}={_CONTROL_CHARS.sub('', str(value))}"])
    return args


def _input_args(plan: TunnelPlan, sources: Sequence[str]) -> List[str]:
    args = []
    for plan_input, source in zip(plan.inputs, sources):
        if is_remote(source) and plan_input.headers:
            args.extend(["-headers", to_raw_headers(plan_input.headers)])
        args.extend(["-i", source])
    return args


def _output_args(container: str) -> List[str]:
    args = []
    if container in FRAGMENTED_MOVFLAGS:
        args.extend(["-movflags", FRAGMENTED_MOVFLAGS[container]])
    muxer = "image2pipe" if container in IMAGE_CONTAINERS else MUXERS.get(container, container)
    args.extend(["-f", muxer, OUTPUT_TARGET])
    return args


def _audio_codec_args(plan: TranscodeAudioPlan) -> List[str]:
    output_format = plan.output_format
    audio_format = AUDIO_FORMATS[output_format.container]
    args = ["-vn"]
    if output_format.copy:
        args.extend(["-c:a", "copy"])
    else:
        args.extend(["-c:a", audio_format.encoder])
        if output_format.bitrate and audio_format.bitrate_applies:
            args.extend(["-b:a", f"{output_format.bitrate}k"])
    if audio_format.name == "mp3" and output_format.bitrate == "8":
        args.extend(["-ar", "12000"])
    if audio_format.name == "opus":
        args.extend(["-vbr", "off"])
    return args


def build_ffmpeg_args(plan: TunnelPlan, sources: Optional[Sequence[str]] = None) -> List[str]:
    """
    Build the ffmpeg argument list (without the executable) for ``plan``.

    Args:
        plan (TunnelPlan): A processing plan.
        sources (Sequence[str], optional): Input locations, one per plan input. Defaults to the plan's URLs;
            a local path replaces a URL after the source was downloaded first.

    Returns:
        List[str]: Arguments ready to be passed after the ffmpeg executable.

    Raises:
        MetadataTagError: If the plan carries a metadata tag outside the allow-list.
        ValueError: If the plan kind is not produced by ffmpeg.
    """
    if sources is None:
        sources = [plan_input.url for plan_input in plan.inputs]
    if len(sources) != len(plan.inputs):
        raise ValueError("Every plan input needs exactly one source")

    output_format = plan.output_format
    args = ["-loglevel", "-8"]

    if isinstance(plan, EnhanceVideoPlan):
        if any(is_remote(source) for source in sources):
            args.extend(["-reconnect", "1", "-reconnect_streamed", "1", "-reconnect_delay_max", "5"])
        args.extend(_input_args(plan, sources))
        args.extend(
            [
                "-c:v", "copy",
                "-c:a", "copy",
                "-avoid_negative_ts", "make_zero",
                "-fflags", "+genpts+igndts",
                "-max_muxing_queue_size", "2048",
                "-max_interleave_delta", "0",
            ]
        )
    elif isinstance(plan, MergePlan):
        args.extend(_input_args(plan, sources))
        args.extend(["-map", "0:v", "-map", "1:a", "-c:v", "copy"])
        if plan.is_hls or not output_format.copy:
            if output_format.container == "webm":
                args.extend(["-c:a", "libopus"])
            else:
                args.extend(["-c:a", "aac", "-bsf:a", "aac_adtstoasc"])
        else:
            args.extend(["-c:a", "copy"])
        args.extend(metadata_args(plan.metadata_tags))
    elif isinstance(plan, RemuxPlan):
        args.extend(_input_args(plan, sources))
        if plan.mute:
            args.extend(["-c:v", "copy", "-an"])
        elif plan.is_hls:
            args.extend(["-c", "copy", "-bsf:a", "aac_adtstoasc"])
        else:
            args.extend(["-c", "copy"])
        args.extend(metadata_args(plan.metadata_tags))
    elif isinstance(plan, TranscodeAudioPlan):
        args.extend(_input_args(plan, sources))
        args.extend(_audio_codec_args(plan))
        args.extend(metadata_args(plan.metadata_tags))
    elif isinstance(plan, TranscodeGifPlan):
        args.extend(_input_args(plan, sources))
        args.extend(["-vf", GIF_FILTER, "-loop", "0"])
    else:
        raise ValueError(f"{plan.kind.value} plans are not executed by ffmpeg")

    args.extend(_output_args(output_format.container))
    return args


def build_command(args: Sequence[str], ffmpeg_path: str = "ffmpeg", priority: Optional[int] = None) -> List[str]:
    """Prefix ``args`` with the executable, wrapped in ``nice`` when a priority is configured."""
    if priority is not None:
        return ["nice", "-n", str(priority), ffmpeg_path, *args]
    return [ffmpeg_path, *args]
