from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., description="The link to resolve.")
    download_mode: Literal["auto", "audio", "mute", "hd"] = Field(
        "auto", alias="downloadMode", description="Video, audio only, muted video or the HD variant."
    )
    audio_format: Literal["best", "mp3", "ogg", "wav", "opus", "m4a"] = Field(
        "mp3", alias="audioFormat", description="Target audio format; 'best' keeps the source format when possible."
    )
    audio_bitrate: Literal["320", "256", "128", "96", "64", "8"] = Field(
        "128", alias="audioBitrate", description="Target audio bitrate in kbps."
    )
    full_audio: bool = Field(False, alias="fullAudio", description="Prefer the original standalone audio track.")
    allow_h265: bool = Field(False, alias="allowH265", description="Allow H.265/HEVC video.")
    always_proxy: bool = Field(False, alias="alwaysProxy", description="Tunnel media instead of redirecting.")
    disable_metadata: bool = Field(False, alias="disableMetadata", description="Do not embed file metadata.")
    convert_gif: bool = Field(True, alias="convertGif", description="Convert GIF-like videos to real GIFs.")
    local_processing: bool = Field(
        False, alias="localProcessing", description="Let the client merge/remux/convert instead of the server."
    )


class ErrorResponse(BaseModel):
    status: Literal["error"] = "error"
    code: str
    context: Optional[Dict[str, Any]] = None


class RedirectResponse(BaseModel):
    status: Literal["redirect"] = "redirect"
    url: str
    filename: str


class TunnelResponse(BaseModel):
    status: Literal["tunnel"] = "tunnel"
    url: str
    filename: str


class PickerItem(BaseModel):
    type: Literal["photo", "video"]
    url: str


class PickerAudio(BaseModel):
    url: str
    filename: str


class PickerResponse(BaseModel):
    status: Literal["picker"] = "picker"
    items: List[PickerItem]
    audio: Optional[PickerAudio] = None


class LocalProcessingAudio(BaseModel):
    format: str
    bitrate: Optional[str] = None
    copy_: bool = Field(False, alias="copy")

    model_config = ConfigDict(populate_by_name=True)


class LocalProcessingResponse(BaseModel):
    status: Literal["local-processing"] = "local-processing"
    type: Literal["merge", "remux", "mute", "audio", "gif"]
    url: str
    filename: str
    tunnel: List[str]
    audio: Optional[LocalProcessingAudio] = None


ApiResponse = Union[ErrorResponse, RedirectResponse, TunnelResponse, PickerResponse, LocalProcessingResponse]
