import os

import pytest

from gallery.core.results import ErrorKind, ForensicsInputError, Outcome
from gallery.core.sample_fetch import (
    add_token,
    fetch_sample,
    open_source,
    rewrite_playlist,
    target_seconds,
    validate_source_url,
)

HOSTS = ["media.example.com"]


@pytest.mark.parametrize(
    "url,reason",
    [
        ("", "blank"),
        ("ftp://media.example.com/a.mp4", "http(s)"),
        ("https:///nohost", "http(s)"),
        ("https://evil.example.net/a.m3u8", "Only URLs on this site"),
        ("https://media.example.com/" + "a" * 10_001, "too long"),
    ],
)
def test_validate_source_url_rejections(url, reason):
    with pytest.raises(ForensicsInputError, match=reason.replace("(", r"\(").replace(")", r"\)")):
        validate_source_url(url, HOSTS)


def test_target_seconds_bounds():
    assert target_seconds(60, 6) == 366
    assert target_seconds(1, 6) == 30
    assert target_seconds(0, 0) == 366
    assert target_seconds(200, 10) == 1800


def test_add_token_keeps_existing():
    assert add_token("https://h/a.ts", "abc") == "https://h/a.ts?token=abc"
    assert add_token("https://h/a.ts?token=zzz", "abc") == "https://h/a.ts?token=zzz"
    assert add_token("https://h/a.ts?x=1", None) == "https://h/a.ts?x=1"


def test_rewrite_playlist_absolutizes_and_tokenizes():
    body = (
        "#EXTM3U\n"
        '#EXT-X-KEY:METHOD=AES-128,URI="key.bin"\n'
        "#EXTINF:6.0,\n"
        "seg_00000.ts\n"
        "\n"
        "#EXTINF:6.0,\n"
        "https://media.example.com/other/seg_00001.ts?token=keep\n"
    )
    out = rewrite_playlist(body, "https://media.example.com/hls/a/v0/index.m3u8?token=t1", "t1", HOSTS)
    lines = out.splitlines()
    assert lines[1] == '#EXT-X-KEY:METHOD=AES-128,URI="https://media.example.com/hls/a/v0/key.bin?token=t1"'
    assert lines[3] == "https://media.example.com/hls/a/v0/seg_00000.ts?token=t1"
    assert lines[5] == "https://media.example.com/other/seg_00001.ts?token=keep"
    assert "" not in lines


def test_rewrite_playlist_rejects_foreign_hosts_and_non_playlists():
    with pytest.raises(ForensicsInputError, match="disallowed host"):
        rewrite_playlist("#EXTM3U\nhttps://cdn.evil.net/seg.ts\n", "https://media.example.com/x.m3u8", None, HOSTS)
    with pytest.raises(ForensicsInputError, match="M3U8"):
        rewrite_playlist("<html></html>", "https://media.example.com/x.m3u8", None, HOSTS)


class _Response:
    def __init__(self, status_code, body=b"", location=None, content_type=None):
        self.status_code = status_code
        self.body = body.encode() if isinstance(body, str) else body
        self.headers = {}
        if location:
            self.headers["location"] = location
        if content_type:
            self.headers["content-type"] = content_type
        self.is_redirect = status_code in (301, 302, 303, 307, 308) and location is not None
        self.closed = False

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start:start + chunk_size]

    def close(self):
        self.closed = True


class _Session:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requested = []
        self.served = []

    def get(self, url, **kwargs):
        assert kwargs["allow_redirects"] is False
        assert kwargs["stream"] is True
        self.requested.append(url)
        response = self.responses.pop(0)
        self.served.append(response)
        return response


def test_redirect_keeps_token_and_final_url():
    session = _Session([
        _Response(302, location="/moved/index.m3u8"),
        _Response(200, body="#EXTM3U\n"),
    ])
    body, final = open_source("https://media.example.com/hls/index.m3u8?token=t1", HOSTS, session=session)
    assert body == "#EXTM3U\n"
    assert final == "https://media.example.com/moved/index.m3u8?token=t1"
    assert session.requested[1] == final
    assert all(r.closed for r in session.served)


def test_redirect_to_foreign_host_is_rejected():
    session = _Session([_Response(302, location="https://evil.example.net/index.m3u8")])
    with pytest.raises(ForensicsInputError, match="disallowed host"):
        open_source("https://media.example.com/index.m3u8", HOSTS, session=session)


def test_redirect_loop_is_bounded():
    session = _Session([_Response(302, location="/again.m3u8") for _ in range(10)])
    with pytest.raises(ForensicsInputError, match="source redirect loop"):
        open_source("https://media.example.com/index.m3u8", HOSTS, session=session)


def test_http_error_is_input_error():
    with pytest.raises(ForensicsInputError, match="source HTTP 403"):
        open_source("https://media.example.com/index.m3u8", HOSTS, session=_Session([_Response(403)]))


def test_playlist_is_recognised_by_content_type():
    session = _Session([_Response(200, body="#EXTM3U\n", content_type="application/vnd.apple.mpegurl; charset=utf-8")])
    body, _ = open_source("https://media.example.com/api/v1/stream/playlist/m1?token=t1", HOSTS, session=session)
    assert body == "#EXTM3U\n"


def test_playlist_is_recognised_by_body_when_served_as_text():
    session = _Session([_Response(200, body="\n#EXTM3U\n#EXTINF:6,\nseg.ts\n", content_type="text/plain")])
    body, _ = open_source("https://media.example.com/watch/m1", HOSTS, session=session)
    assert body.lstrip().startswith("#EXTM3U")


def test_direct_video_is_not_read_as_playlist():
    session = _Session([_Response(200, body=b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 200_000, content_type="video/mp4")])
    body, final = open_source("https://media.example.com/files/leak", HOSTS, session=session)
    assert body is None
    assert final == "https://media.example.com/files/leak"


def test_oversized_playlist_is_rejected():
    big = "#EXTM3U\n" + "#EXTINF:6,\nseg.ts\n" * 200_000
    session = _Session([_Response(200, body=big, content_type="application/x-mpegurl")])
    with pytest.raises(ForensicsInputError, match="too large"):
        open_source("https://media.example.com/index.m3u8", HOSTS, session=session)


def test_fetch_sample_from_viewer_playlist_url(config, fake_tools_factory):
    body = (
        "#EXTM3U\n"
        "#EXT-X-TARGETDURATION:6\n"
        "#EXTINF:6.000,\n"
        "/api/v1/stream/segment/m1/a/seg_00000.ts?ts=1700000000&sig=0123456789abcdef0123456789abcdef\n"
        "#EXTINF:6.000,\n"
        "/api/v1/stream/segment/m1/b/seg_00001.ts?ts=1700000000&sig=fedcba9876543210fedcba9876543210\n"
        "#EXT-X-ENDLIST\n"
    )
    session = _Session([_Response(200, body=body, content_type="application/vnd.apple.mpegurl")])
    tools = fake_tools_factory()
    url = "https://media.example.com/api/v1/stream/playlist/m1?token=t1"

    path = fetch_sample(url, HOSTS, config, tools=tools, session=session)
    try:
        assert os.path.getsize(path) > 0
    finally:
        os.remove(path)

    [call] = tools.remux_calls
    assert call["playlist"] is True
    assert call["input"].endswith(".m3u8")
    assert not os.path.exists(call["input"])
    segments = [line for line in call["playlist_text"].splitlines() if not line.startswith("#")]
    assert segments == [
        "https://media.example.com/api/v1/stream/segment/m1/a/seg_00000.ts"
        "?ts=1700000000&sig=0123456789abcdef0123456789abcdef&token=t1",
        "https://media.example.com/api/v1/stream/segment/m1/b/seg_00001.ts"
        "?ts=1700000000&sig=fedcba9876543210fedcba9876543210&token=t1",
    ]


def test_fetch_sample_from_direct_video(config, fake_tools_factory):
    session = _Session([
        _Response(302, location="/files/leak.mp4"),
        _Response(200, body=b"\x00\x00\x00\x18ftypmp42", content_type="video/mp4"),
    ])
    tools = fake_tools_factory()

    path = fetch_sample("https://media.example.com/d/leak", HOSTS, config, tools=tools, session=session, max_samples=10)
    try:
        assert path.endswith(".mp4")
    finally:
        os.remove(path)

    [call] = tools.remux_calls
    assert call["playlist"] is False
    assert call["input"] == "https://media.example.com/files/leak.mp4"
    assert call["seconds"] == 10 * config.segment_seconds + config.segment_seconds


def test_failed_remux_removes_output(config, fake_tools_factory, monkeypatch, tmp_path):
    monkeypatch.setattr("tempfile.tempdir", str(tmp_path))
    tools = fake_tools_factory()
    monkeypatch.setattr(tools, "remux", lambda *a, **k: Outcome.failure(ErrorKind.TOOL, "exit 1"))
    session = _Session([_Response(200, body="#EXTM3U\n#EXTINF:6,\nseg.ts\n")])

    with pytest.raises(ForensicsInputError, match="variant playlist"):
        fetch_sample("https://media.example.com/hls/index.m3u8", HOSTS, config, tools=tools, session=session)
    assert os.listdir(tmp_path) == []
