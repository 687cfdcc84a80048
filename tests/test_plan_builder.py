import pytest

from mediagrab.processing import errors
from mediagrab.processing.metadata import AudioTarget, Capabilities, MetadataRecord
from mediagrab.processing.plan import (
    DirectProxyPlan,
    EnhanceVideoPlan,
    ErrorPlan,
    LocalProcessingPlan,
    MergePlan,
    PickerPlan,
    PlanInput,
    PlanKind,
    RedirectPlan,
    RemuxPlan,
    TranscodeAudioPlan,
    TranscodeGifPlan,
)
from mediagrab.processing.plan_builder import PlanOptions, audio_size_multiplier, build, select_video
from mediagrab.processing.formats import get_audio_format
from tests.factories import audio, image, record, video

VIDEO_URL = "https://cdn.example.com/clip.mp4"
AUDIO_URL = "https://cdn.example.com/clip.m4a"


class ExplodingAssets(tuple):
    def __iter__(self):
        raise AssertionError("assets must not be read when resolution failed")


def test_single_video_redirects():
    plan = build(record(video()), PlanOptions())

    assert isinstance(plan, RedirectPlan)
    assert plan.kind == PlanKind.REDIRECT
    assert plan.url == VIDEO_URL
    assert plan.filename == "clip.mp4"


def test_separate_tracks_are_merged_video_first():
    plan = build(record(audio(bitrate=128), video(has_audio=False)), PlanOptions())

    assert isinstance(plan, MergePlan)
    assert plan.kind == PlanKind.MERGE
    assert [plan_input.url for plan_input in plan.inputs] == [VIDEO_URL, AUDIO_URL]
    assert plan.filename == "clip.mp4"
    assert plan.output_format.copy is True


def test_merge_picks_highest_bitrate_audio():
    low = audio("https://cdn.example.com/low.m4a", bitrate=64)
    high = audio("https://cdn.example.com/high.m4a", bitrate=256)
    plan = build(record(video(has_audio=False), low, high), PlanOptions())

    assert plan.inputs[1].url == "https://cdn.example.com/high.m4a"


def test_image_set_becomes_picker():
    urls = [f"https://cdn.example.com/{index}.jpg" for index in range(3)]
    plan = build(record(*(image(url) for url in urls)), PlanOptions())

    assert isinstance(plan, PickerPlan)
    assert len(plan.items) == 3
    assert all(item.plan.kind == PlanKind.DIRECT_PROXY for item in plan.items)
    assert all(item.type == "photo" for item in plan.items)
    assert [item.plan.inputs[0].url for item in plan.items] == urls
    assert [item.plan.filename for item in plan.items] == ["clip_photo_1.jpg", "clip_photo_2.jpg", "clip_photo_3.jpg"]


def test_picker_items_are_remuxed_when_always_proxy():
    plan = build(record(image("https://a/1.jpg"), image("https://a/2.jpg")), PlanOptions(always_proxy=True))

    assert all(isinstance(item.plan, RemuxPlan) for item in plan.items)
    assert all(item.plan.output_format.copy for item in plan.items)


def test_picker_carries_audio_track():
    plan = build(record(image("https://a/1.jpg"), image("https://a/2.jpg"), audio()), PlanOptions())

    assert isinstance(plan.audio, TranscodeAudioPlan)
    assert plan.audio.filename == "clip_audio.mp3"


def test_image_set_in_audio_mode_extracts_audio():
    plan = build(record(image("https://a/1.jpg"), image("https://a/2.jpg"), video()), PlanOptions(download_mode="audio"))

    assert isinstance(plan, TranscodeAudioPlan)


def test_transient_error_short_circuits_without_reading_assets():
    error = errors.resolution_error(errors.FETCH_RATE, service="Direct link")
    metadata = MetadataRecord(service="direct", source_assets=ExplodingAssets(), transient_error=error)

    plan = build(metadata, PlanOptions())

    assert isinstance(plan, ErrorPlan)
    assert plan.code == errors.FETCH_RATE
    assert dict(plan.context) == {"service": "Direct link"}


def test_critical_flag_is_kept():
    error = errors.resolution_error(errors.FETCH_CRITICAL, service="Direct link", critical=True)

    plan = build(MetadataRecord.failed("direct", error), PlanOptions())

    assert plan.critical is True


def test_no_assets_is_fetch_empty():
    plan = build(record(), PlanOptions())

    assert plan == ErrorPlan(code=errors.FETCH_EMPTY)


def test_duration_limit():
    plan = build(record(video(), duration=20000), PlanOptions(duration_limit=10800))

    assert plan.code == errors.CONTENT_TOO_LONG
    assert dict(plan.context) == {"limit": 180}


def test_duration_within_limit_is_accepted():
    plan = build(record(video(), duration=60), PlanOptions(duration_limit=10800))

    assert isinstance(plan, RedirectPlan)


def test_audio_copy_fast_path():
    source = audio("https://cdn.example.com/song.mp3", container="mp3")

    plan = build(record(source), PlanOptions(download_mode="audio", audio_format="mp3"))

    assert isinstance(plan, DirectProxyPlan)
    assert plan.inputs[0].url == "https://cdn.example.com/song.mp3"
    assert plan.filename == "clip_audio.mp3"


def test_audio_from_video_is_transcoded():
    plan = build(record(video()), PlanOptions(download_mode="audio", audio_format="mp3", audio_bitrate="320"))

    assert isinstance(plan, TranscodeAudioPlan)
    assert plan.filename == "clip_audio.mp3"
    assert plan.output_format.container == "mp3"
    assert plan.output_format.codec == "libmp3lame"
    assert plan.output_format.bitrate == "320"
    assert plan.estimated_size_multiplier == pytest.approx(0.55)


def test_best_audio_uses_hint():
    source = audio("https://cdn.example.com/track", container="opus")
    metadata = record(source, best_audio_hint=AudioTarget("opus", "opus"))

    plan = build(metadata, PlanOptions(download_mode="audio", audio_format="best"))

    assert isinstance(plan, DirectProxyPlan)
    assert plan.filename == "clip_audio.opus"


def test_best_audio_without_hint_uses_default_format():
    plan = build(record(audio()), PlanOptions(download_mode="audio", audio_format="best", default_audio_format="m4a"))

    # source already looks like m4a, but without a hint the default is always re-encoded
    assert isinstance(plan, TranscodeAudioPlan)
    assert plan.output_format.container == "m4a"
    assert plan.output_format.codec == "aac"


def test_wav_has_no_bitrate():
    plan = build(record(video()), PlanOptions(download_mode="audio", audio_format="wav"))

    assert plan.output_format.bitrate is None


def test_full_audio_prefers_original_track():
    plan = build(record(video(), audio(bitrate=160)), PlanOptions(download_mode="audio", full_audio=True))

    assert plan.inputs[0].url == AUDIO_URL
    assert plan.filename == "clip_audio_original.mp3"


def test_audio_defaults_to_video_track():
    plan = build(record(video(), audio(bitrate=160)), PlanOptions(download_mode="audio"))

    assert plan.inputs[0].url == VIDEO_URL
    assert plan.filename == "clip_audio.mp3"


def test_audio_not_supported():
    metadata = record(video(), capabilities=Capabilities(audio_supported=False))

    plan = build(metadata, PlanOptions(download_mode="audio"))

    assert plan.code == errors.SERVICE_AUDIO_NOT_SUPPORTED


def test_hls_audio_is_never_copied():
    source = audio("https://cdn.example.com/song.mp3", container="mp3")
    metadata = record(source, capabilities=Capabilities(has_hls=True))

    plan = build(metadata, PlanOptions(download_mode="audio", audio_format="mp3"))

    assert isinstance(plan, TranscodeAudioPlan)
    assert plan.is_hls is True


def test_mute_requires_support():
    plan = build(record(video()), PlanOptions(download_mode="mute"))

    assert plan.code == errors.SERVICE_NOT_SUPPORTED


def test_mute_strips_audio():
    metadata = record(video(), capabilities=Capabilities(supports_mute=True))

    plan = build(metadata, PlanOptions(download_mode="mute"))

    assert isinstance(plan, RemuxPlan)
    assert plan.mute is True
    assert plan.filename == "clip_mute.mp4"


def test_mute_of_silent_video_is_proxied():
    metadata = record(video(has_audio=False), capabilities=Capabilities(supports_mute=True))

    plan = build(metadata, PlanOptions(download_mode="mute"))

    assert isinstance(plan, DirectProxyPlan)
    assert plan.filename == "clip_mute.mp4"


@pytest.mark.parametrize(
    "options",
    [
        PlanOptions(download_mode="hd"),
        PlanOptions(download_mode="hd", always_proxy=True),
        PlanOptions(download_mode="hd", local_processing=True, allow_h265=True),
        PlanOptions(download_mode="hd", convert_gif=True),
    ],
)
def test_hd_without_variant_is_not_supported(options):
    plan = build(record(video(), is_gif=True), options)

    assert isinstance(plan, ErrorPlan)
    assert plan.code == errors.SERVICE_NOT_SUPPORTED


def test_hd_uses_hd_asset():
    metadata = record(
        video(),
        video("https://cdn.example.com/clip_hd.mp4", hd=True),
        capabilities=Capabilities(supports_hd_variant=True),
    )

    plan = build(metadata, PlanOptions(download_mode="hd"))

    assert isinstance(plan, EnhanceVideoPlan)
    assert plan.inputs[0].url == "https://cdn.example.com/clip_hd.mp4"
    assert plan.filename == "clip_HD.mp4"
    assert plan.estimated_size_multiplier == 4.0


def test_gif_conversion():
    plan = build(record(video(), is_gif=True), PlanOptions())

    assert isinstance(plan, TranscodeGifPlan)
    assert plan.filename == "clip.gif"
    assert plan.output_format.container == "gif"


def test_gif_conversion_disabled():
    plan = build(record(video(), is_gif=True), PlanOptions(convert_gif=False))

    assert isinstance(plan, RedirectPlan)


def test_hls_video_is_remuxed():
    metadata = record(video("https://cdn.example.com/master.m3u8"), capabilities=Capabilities(has_hls=True))

    plan = build(metadata, PlanOptions())

    assert isinstance(plan, RemuxPlan)
    assert plan.is_hls is True
    assert plan.filename == "clip.mp4"


def test_always_proxy_proxies_single_file():
    plan = build(record(video()), PlanOptions(always_proxy=True))

    assert isinstance(plan, DirectProxyPlan)
    assert plan.inputs[0].url == VIDEO_URL


def test_redirect_not_allowed_proxies():
    plan = build(record(video(), capabilities=Capabilities(allows_redirect=False)), PlanOptions())

    assert isinstance(plan, DirectProxyPlan)


def test_upstream_headers_are_forwarded():
    metadata = record(video(), upstream_headers={"referer": "https://example.com/"})

    plan = build(metadata, PlanOptions(always_proxy=True))

    assert dict(plan.inputs[0].headers) == {"referer": "https://example.com/"}


def test_h265_is_only_used_when_allowed():
    hevc = video("https://cdn.example.com/hevc.mp4", codec="hevc")
    avc = video("https://cdn.example.com/avc.mp4", codec="h264")

    assert build(record(hevc, avc), PlanOptions()).url == "https://cdn.example.com/avc.mp4"
    assert build(record(hevc, avc), PlanOptions(allow_h265=True)).url == "https://cdn.example.com/hevc.mp4"


def test_select_video_falls_back_to_hevc():
    hevc = video("https://cdn.example.com/hevc.mp4", codec="hev1")

    assert select_video([hevc], allow_h265=False) == hevc
    assert select_video([], allow_h265=True) is None


def test_metadata_tags_are_filtered():
    metadata = record(video(has_audio=False), audio(), metadata_tags={"title": "Song", "comment": "dropped"})

    assert dict(build(metadata, PlanOptions()).metadata_tags) == {"title": "Song"}
    assert dict(build(metadata, PlanOptions(disable_metadata=True)).metadata_tags) == {}


def test_refused_partial_reads_requests_prefetch():
    metadata = record(video(), capabilities=Capabilities(refuses_partial_reads=True))

    plan = build(metadata, PlanOptions(download_mode="audio"))

    assert plan.prefetch is True


def test_local_processing_wraps_merge():
    plan = build(record(video(has_audio=False), audio()), PlanOptions(local_processing=True))

    assert isinstance(plan, LocalProcessingPlan)
    assert plan.processing_type == "merge"
    assert isinstance(plan.plan, MergePlan)


def test_local_processing_mute_type():
    metadata = record(video(), capabilities=Capabilities(supports_mute=True))

    plan = build(metadata, PlanOptions(download_mode="mute", local_processing=True))

    assert plan.processing_type == "mute"


def test_local_processing_never_for_hls():
    metadata = record(video(has_audio=False), audio(), capabilities=Capabilities(has_hls=True))

    plan = build(metadata, PlanOptions(local_processing=True))

    assert isinstance(plan, MergePlan)
    assert plan.is_hls is True


def test_local_processing_ignores_redirects():
    plan = build(record(video()), PlanOptions(local_processing=True))

    assert isinstance(plan, RedirectPlan)


def test_local_processing_plan_rejects_unsupported_kinds():
    enhance = EnhanceVideoPlan(inputs=(PlanInput(VIDEO_URL),), filename="clip_HD.mp4")
    hls = RemuxPlan(inputs=(PlanInput(VIDEO_URL),), filename="clip.mp4", is_hls=True)

    with pytest.raises(ValueError):
        LocalProcessingPlan(enhance)
    with pytest.raises(ValueError):
        LocalProcessingPlan(hls)


def test_merge_plan_requires_two_inputs():
    with pytest.raises(ValueError):
        MergePlan(inputs=(PlanInput(VIDEO_URL),), filename="clip.mp4")


def test_plans_are_immutable():
    plan = build(record(video()), PlanOptions(always_proxy=True))

    with pytest.raises(AttributeError):
        plan.filename = "other.mp4"
    with pytest.raises(TypeError):
        plan.inputs[0].headers["x"] = "y"


def test_error_plan_context_is_read_only():
    plan = ErrorPlan(code=errors.CONTENT_TOO_LONG, context={"limit": 180})

    assert plan.context == {"limit": 180}
    with pytest.raises(TypeError):
        plan.context["limit"] = 1


def test_audio_size_multiplier():
    assert audio_size_multiplier(get_audio_format("mp3"), "8") == pytest.approx(0.33)
    assert audio_size_multiplier(get_audio_format("opus"), "128") == pytest.approx(0.44)
    assert audio_size_multiplier(get_audio_format("wav"), None) == pytest.approx(0.66)
