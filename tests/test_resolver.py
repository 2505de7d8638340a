import asyncio
import os
import stat
import sys
import textwrap

import pytest

from streamgate.errors import (
    AuthenticationRequired,
    GenericFailure,
    ParseError,
    PrivateVideo,
    RequestTimeout,
    TransientFailure,
    VideoUnavailable,
)
from streamgate.formats import FormatSpec
from streamgate.resolver import ExternalResolver, classify_failure

FAKE_YTDLP = textwrap.dedent(
    """
    import json
    import signal
    import sys
    import time

    video_id = sys.argv[-1].rsplit("=", 1)[-1]
    if video_id == "private":
        sys.stderr.write("ERROR: [youtube] private: Private video. Sign in if you've been granted access\\n")
        sys.exit(1)
    if video_id == "flaky":
        sys.stderr.write("ERROR: unable to download video data: HTTP Error 503: Service Unavailable\\n")
        sys.exit(1)
    if video_id == "garbage":
        print("this is not json")
        sys.exit(0)
    if video_id == "slow":
        time.sleep(30)
    if video_id == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        sys.stdout.buffer.write(b"ready")
        sys.stdout.flush()
        time.sleep(30)
    if "--dump-json" in sys.argv:
        print(json.dumps({"id": video_id, "title": "Fake", "argv": sys.argv[1:]}))
        sys.exit(0)
    out = sys.stdout.buffer
    for i in range(4):
        out.write(b"chunk%d;" % i)
        out.flush()
    """
)

FAKE_FFMPEG = textwrap.dedent(
    """
    import sys
    data = sys.stdin.buffer.read()
    sys.stdout.buffer.write(b"ID3" + data)
    """
)


@pytest.fixture
def fake_ytdlp(tmp_path):
    script = tmp_path / "fake_ytdlp.py"
    script.write_text(FAKE_YTDLP)
    return [sys.executable, str(script)]


@pytest.fixture
def fake_ffmpeg(tmp_path):
    script = tmp_path / "ffmpeg"
    script.write_text(f"#!{sys.executable}\n" + FAKE_FFMPEG)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


async def read_all(handle):
    chunks = []
    while True:
        chunk = await handle.read(1024)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


@pytest.mark.parametrize(
    "stderr,expected",
    [
        ("ERROR: [youtube] abc: Private video. Sign in if you've been granted access", PrivateVideo),
        ("ERROR: [youtube] abc: Sign in to confirm your age", AuthenticationRequired),
        ("ERROR: [youtube] abc: Sign in to confirm you're not a bot. Use --cookies", AuthenticationRequired),
        ("ERROR: [youtube] abc: Video unavailable", VideoUnavailable),
        ("ERROR: Unable to download webpage: Connection reset by peer", TransientFailure),
        ("ERROR: unable to download video data: HTTP Error 429: Too Many Requests", TransientFailure),
        ("WARNING: noise\nERROR: something odd happened", GenericFailure),
    ],
)
def test_classify_failure(stderr, expected):
    error = classify_failure(stderr, 1)
    assert type(error) is expected


def test_classify_failure_uses_error_line_as_message():
    assert classify_failure("[info] x\nERROR: something odd happened", 1).message == "something odd happened"
    assert classify_failure("", 2).message == "yt-dlp exited with code 2"


def test_cookies_are_passed_only_when_file_exists(tmp_path):
    cookies = tmp_path / "cookies.txt"
    resolver = ExternalResolver(["yt-dlp"], cookies_file=str(cookies))
    assert "--cookies" not in resolver.metadata_command("dQw4w9WgXcQ")

    cookies.write_text("# Netscape HTTP Cookie File\n")
    command = resolver.stream_command("dQw4w9WgXcQ", FormatSpec("video", "720"))
    assert command[command.index("--cookies") + 1] == str(cookies)
    assert command[-1] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert command[command.index("-o") + 1] == "-"


def test_transcode_command_uses_fixed_bitrate():
    command = ExternalResolver(["yt-dlp"], ffmpeg_binary="ffmpeg").transcode_command()
    assert command[0] == "ffmpeg"
    assert command[command.index("-b:a") + 1] == "192k"
    assert command[-1] == "pipe:1"


@pytest.mark.asyncio
async def test_resolve_metadata_parses_json(fake_ytdlp):
    info = await ExternalResolver(fake_ytdlp).resolve_metadata("abc")
    assert info["id"] == "abc"
    assert "--dump-json" in info["argv"]
    assert "--no-playlist" in info["argv"]


@pytest.mark.asyncio
async def test_resolve_metadata_classifies_failures(fake_ytdlp):
    resolver = ExternalResolver(fake_ytdlp)
    with pytest.raises(PrivateVideo):
        await resolver.resolve_metadata("private")
    with pytest.raises(TransientFailure):
        await resolver.resolve_metadata("flaky")
    with pytest.raises(ParseError):
        await resolver.resolve_metadata("garbage")


@pytest.mark.asyncio
async def test_resolve_metadata_times_out(fake_ytdlp):
    resolver = ExternalResolver(fake_ytdlp, metadata_timeout=0.5, terminate_grace=1)
    with pytest.raises(RequestTimeout):
        await resolver.resolve_metadata("slow")


@pytest.mark.asyncio
async def test_spawn_failure_is_transient():
    resolver = ExternalResolver([os.path.join("/nonexistent", "yt-dlp")])
    with pytest.raises(TransientFailure):
        await resolver.resolve_metadata("abc")


@pytest.mark.asyncio
async def test_video_stream_is_read_incrementally(fake_ytdlp):
    handle = await ExternalResolver(fake_ytdlp).open_stream("abc", FormatSpec("video", "best"))
    async with handle:
        body = await read_all(handle)
        assert await handle.wait() == 0
    assert body == b"chunk0;chunk1;chunk2;chunk3;"
    assert not handle.running


@pytest.mark.asyncio
async def test_failing_stream_is_classified(fake_ytdlp):
    handle = await ExternalResolver(fake_ytdlp).open_stream("flaky", FormatSpec("video", "best"))
    async with handle:
        assert await read_all(handle) == b""
        assert await handle.wait() == 1
        assert isinstance(handle.error(), TransientFailure)
        assert "HTTP Error 503" in handle.stderr_tail()


@pytest.mark.asyncio
async def test_terminate_stops_running_process(fake_ytdlp):
    handle = await ExternalResolver(fake_ytdlp, terminate_grace=2).open_stream("slow", FormatSpec())
    assert handle.running
    await handle.terminate()
    assert not handle.running


@pytest.mark.asyncio
async def test_terminate_escalates_to_kill(fake_ytdlp):
    handle = await ExternalResolver(fake_ytdlp, terminate_grace=0.3).open_stream("stubborn", FormatSpec())
    assert await asyncio.wait_for(handle.read(5), timeout=10) == b"ready"
    await asyncio.wait_for(handle.terminate(), timeout=5)
    assert not handle.running
    assert await handle.wait() == -9


@pytest.mark.asyncio
async def test_audio_runs_through_transcoder(fake_ytdlp, fake_ffmpeg):
    resolver = ExternalResolver(fake_ytdlp, ffmpeg_binary=fake_ffmpeg)
    handle = await resolver.open_stream("abc", FormatSpec("audio", "best"))
    async with handle:
        body = await asyncio.wait_for(read_all(handle), timeout=10)
        assert await handle.wait() == 0
    assert body == b"ID3chunk0;chunk1;chunk2;chunk3;"
    assert len(handle.pids) == 2
