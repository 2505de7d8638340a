import pytest

from streamgate.errors import InvalidInput
from streamgate.formats import (
    FormatSpec,
    download_headers,
    info_payload,
    parse_format,
    sanitize_filename,
)

from fakes import SAMPLE_INFO


def test_video_selector_prefers_mp4_under_height_ceiling():
    assert FormatSpec("video", "720").selector() == (
        "best[ext=mp4][height<=720]/best[height<=720]/best[ext=mp4]/best"
    )
    assert FormatSpec("video", "best").selector() == "best[ext=mp4]/best"


def test_audio_selector_and_output():
    fmt = FormatSpec("audio", "best")
    assert fmt.selector() == "bestaudio[ext=m4a]/bestaudio/best"
    assert fmt.extension == "mp3"
    assert fmt.content_type == "audio/mpeg"


def test_parse_format_defaults_and_normalises():
    assert parse_format(None, None) == FormatSpec("video", "best")
    assert parse_format("AUDIO", "best") == FormatSpec("audio", "best")
    assert parse_format("video", "1080p") == FormatSpec("video", "1080")


@pytest.mark.parametrize("media,quality", [("gif", "best"), ("video", "4k"), ("video", "360")])
def test_parse_format_rejects_unknown_values(media, quality):
    with pytest.raises(InvalidInput):
        parse_format(media, quality)


def test_sanitize_filename_strips_unsafe_and_non_ascii():
    assert sanitize_filename('a/b:c*?"<>|', "mp4") == "abc.mp4"
    assert sanitize_filename("Café\nlive", "mp3") == "Caf live.mp3"
    assert sanitize_filename("日本語", "mp3") == "download.mp3"


def test_download_headers_fall_back_to_video_id():
    headers = download_headers(FormatSpec("audio"), None, "dQw4w9WgXcQ")
    assert headers["Content-Type"] == "audio/mpeg"
    assert headers["Content-Disposition"] == 'attachment; filename="dQw4w9WgXcQ.mp3"'


def test_info_payload_shape():
    payload = info_payload(SAMPLE_INFO)
    assert payload["success"] is True
    for key in ("title", "duration", "formats", "thumbnail", "uploader", "view_count", "upload_date"):
        assert key in payload
    formats = payload["formats"]
    assert all(set(f) >= {"type", "quality", "size"} for f in formats)
    video = [f for f in formats if f["type"] == "video"]
    assert [f["quality"] for f in video] == ["720p", "480p"]
    assert video[0]["size"] == 30_000_000
    audio = [f for f in formats if f["type"] == "audio"]
    assert audio == [{"type": "audio", "quality": "192kbps", "size": 192 * 1000 // 8 * 213}]


def test_info_payload_tolerates_sparse_metadata():
    payload = info_payload({"id": "x"})
    assert payload["title"] == "Unknown Title"
    assert payload["duration"] == 0
    assert payload["formats"] == [{"type": "audio", "quality": "192kbps", "size": None}]


def test_sanitize_filename_collapses_line_breaks():
    assert sanitize_filename("Live\r\n\r\nat Wembley", "mp4") == "Live at Wembley.mp4"
    assert sanitize_filename("x", "ñ") == "x.bin"
