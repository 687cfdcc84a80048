import logging

import pytest

from mediagrab.processing.plan import (
    DirectProxyPlan,
    ErrorPlan,
    LocalProcessingPlan,
    MergePlan,
    OutputFormat,
    PickerItem,
    PickerPlan,
    PlanInput,
    RedirectPlan,
    RemuxPlan,
    TranscodeAudioPlan,
)
from mediagrab.processing.response import encode
from mediagrab.schemas import ErrorResponse, LocalProcessingResponse, PickerResponse, TunnelResponse

VIDEO = PlanInput("https://cdn.example.com/clip.mp4")
AUDIO = PlanInput("https://cdn.example.com/clip.m4a")


class RecordingFactory:
    def __init__(self):
        self.plans = []

    def __call__(self, plan):
        self.plans.append(plan)
        return f"https://api.example.com/tunnel?token=t{len(self.plans)}"


def dump(response):
    return response.model_dump(by_alias=True, exclude_none=True)


def test_error_without_context():
    response = encode(ErrorPlan(code="fetch.empty"), RecordingFactory())

    assert isinstance(response, ErrorResponse)
    assert dump(response) == {"status": "error", "code": "fetch.empty"}


def test_error_with_context():
    response = encode(ErrorPlan(code="content.too_long", context={"limit": 180}), RecordingFactory())

    assert dump(response) == {"status": "error", "code": "content.too_long", "context": {"limit": 180}}


def test_critical_error_is_logged(caplog):
    with caplog.at_level(logging.CRITICAL, logger="mediagrab.processing.response"):
        encode(ErrorPlan(code="fetch.critical", context={"service": "Direct link"}, critical=True), RecordingFactory())

    assert "fetch.critical" in caplog.text


def test_redirect():
    response = encode(RedirectPlan(url=VIDEO.url, filename="clip.mp4"), RecordingFactory())

    assert dump(response) == {"status": "redirect", "url": VIDEO.url, "filename": "clip.mp4"}


def test_tunnel_plans_get_a_tunnel_url():
    factory = RecordingFactory()
    plan = RemuxPlan(inputs=(VIDEO,), filename="clip.mp4", output_format=OutputFormat("mp4"))

    response = encode(plan, factory)

    assert isinstance(response, TunnelResponse)
    assert response.url == "https://api.example.com/tunnel?token=t1"
    assert factory.plans == [plan]


def test_picker_links_direct_items_to_origin():
    factory = RecordingFactory()
    proxied = RemuxPlan(inputs=(VIDEO,), filename="clip_video_2.mp4", output_format=OutputFormat("mp4", copy=True))
    audio = TranscodeAudioPlan(inputs=(AUDIO,), filename="clip_audio.mp3", output_format=OutputFormat("mp3"))
    plan = PickerPlan(
        items=(
            PickerItem(type="photo", plan=DirectProxyPlan(inputs=(PlanInput("https://a/1.jpg"),), filename="1.jpg")),
            PickerItem(type="video", plan=proxied),
        ),
        audio=audio,
    )

    response = encode(plan, factory)

    assert isinstance(response, PickerResponse)
    assert dump(response)["items"] == [
        {"type": "photo", "url": "https://a/1.jpg"},
        {"type": "video", "url": "https://api.example.com/tunnel?token=t1"},
    ]
    assert dump(response)["audio"] == {"url": "https://api.example.com/tunnel?token=t2", "filename": "clip_audio.mp3"}
    assert factory.plans == [proxied, audio]


def test_local_processing_tunnels_every_input():
    factory = RecordingFactory()
    merge = MergePlan(inputs=(VIDEO, AUDIO), filename="clip.mp4", output_format=OutputFormat("mp4", copy=True))

    response = encode(LocalProcessingPlan(merge), factory)

    assert isinstance(response, LocalProcessingResponse)
    body = dump(response)
    assert body["status"] == "local-processing"
    assert body["type"] == "merge"
    assert body["tunnel"] == ["https://api.example.com/tunnel?token=t1", "https://api.example.com/tunnel?token=t2"]
    assert body["url"] == body["tunnel"][0]
    assert "audio" not in body
    assert [plan.inputs[0].url for plan in factory.plans] == [VIDEO.url, AUDIO.url]
    assert all(isinstance(plan, DirectProxyPlan) for plan in factory.plans)


def test_local_processing_audio_details():
    plan = TranscodeAudioPlan(
        inputs=(VIDEO,), filename="clip_audio.mp3", output_format=OutputFormat("mp3", codec="libmp3lame", bitrate="128")
    )

    body = dump(encode(LocalProcessingPlan(plan), RecordingFactory()))

    assert body["type"] == "audio"
    assert body["audio"] == {"format": "mp3", "bitrate": "128", "copy": False}


def test_unknown_plan_is_rejected():
    with pytest.raises(TypeError):
        encode(object(), RecordingFactory())
