"""Fetch a leaked sample from a URL into a local file for analysis.

Only http(s) URLs on allowed hosts are accepted. The URL is opened first:
an HLS playlist (by Content-Type, ``.m3u8`` path or ``#EXTM3U`` body) is
rewritten to a local playlist whose URIs are absolute, keep their own query
(signed segment URLs carry ``ts``/``sig``) and carry the ``token`` play
credential of the original URL; anything else is handed to ffmpeg as a direct
video. ffmpeg then remuxes just enough of the stream to cover the requested
samples.

A leaked viewer playlist URL such as ``/api/v1/stream/playlist/<id>?token=...``
is fetched with the leaked token, so the playlist served is the leaker's own
A/B sequence.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from typing import Iterable, Optional
from urllib.parse import parse_qs, urlencode, urljoin, urlsplit, urlunsplit

import requests

from gallery.core.ffmpeg import VideoTools
from gallery.core.results import ForensicsInputError

logger = logging.getLogger(__name__)

MAX_SOURCE_URL_LENGTH = 10_000
MAX_URL_SAMPLE_SECONDS = 1800
MAX_REDIRECTS = 5
MAX_PLAYLIST_BYTES = 2 * 1024 * 1024
TOKEN_PARAM = "token"
USER_AGENT = "GalleryForensicsIdentify/1.0"
PLAYLIST_CONTENT_TYPES = {
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
}

_QUOTED_URI = re.compile(r'URI="([^"]+)"')


def validate_source_url(url: str, allowed_hosts: Iterable[str]) -> str:
    url = (url or "").strip()
    if not url:
        raise ForensicsInputError("source_url is blank")
    if len(url) > MAX_SOURCE_URL_LENGTH:
        raise ForensicsInputError("source_url is too long")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ForensicsInputError("source_url is not a valid http(s) URL")
    hosts = {h.lower() for h in allowed_hosts if h}
    if parts.hostname.lower() not in hosts:
        raise ForensicsInputError(f"Only URLs on this site are allowed ({', '.join(sorted(hosts))})")
    return url


def target_seconds(max_samples: int, segment_seconds: int) -> int:
    """Seconds of stream to download to cover *max_samples* segments."""
    seg = segment_seconds if segment_seconds > 0 else 6
    samples = max_samples if max_samples > 0 else 60
    samples = min(samples, 200)
    return min(max(samples * seg + seg, 30), MAX_URL_SAMPLE_SECONDS)


def token_of(url: str) -> Optional[str]:
    values = parse_qs(urlsplit(url).query).get(TOKEN_PARAM)
    return values[0] if values and values[0] else None


def add_token(url: str, token: Optional[str]) -> str:
    if not token:
        return url
    parts = urlsplit(url)
    query = parse_qs(parts.query, keep_blank_values=True)
    if TOKEN_PARAM in query:
        return url
    query[TOKEN_PARAM] = [token]
    return urlunsplit(parts._replace(query=urlencode(query, doseq=True)))


def _ensure_allowed(url: str, hosts: set) -> None:
    host = urlsplit(url).hostname
    if host and host.lower() not in hosts:
        raise ForensicsInputError(f"playlist contains URI on disallowed host {host!r}")


def rewrite_playlist(body: str, base_url: str, token: Optional[str], allowed_hosts: Iterable[str]) -> str:
    """Absolutize and tokenize every URI in an M3U8 body (segment lines and ``URI="..."`` attributes)."""
    if not body.lstrip().startswith("#EXTM3U"):
        raise ForensicsInputError("playlist did not look like M3U8")
    hosts = {h.lower() for h in allowed_hosts if h}
    parts = urlsplit(base_url)
    base = urlunsplit(parts._replace(query="", fragment=""))

    def _rewrite(value: str) -> str:
        absolute = urljoin(base, value)
        _ensure_allowed(absolute, hosts)
        return add_token(absolute, token)

    lines = []
    for raw in body.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            lines.append(_QUOTED_URI.sub(lambda m: f'URI="{_rewrite(m.group(1))}"', line))
        else:
            lines.append(_rewrite(line))
    return "\n".join(lines) + "\n"


def _read_playlist(response, url: str) -> Optional[str]:
    """The body of *response* when it is an M3U8 playlist, else None (body left unread)."""
    content_type = (response.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
    chunks = response.iter_content(chunk_size=64 * 1024)
    head = next(chunks, b"")
    declared = content_type in PLAYLIST_CONTENT_TYPES or urlsplit(url).path.lower().endswith(".m3u8")
    if not declared and not head.lstrip().startswith(b"#EXTM3U"):
        return None

    body = bytearray(head)
    for chunk in chunks:
        body += chunk
        if len(body) > MAX_PLAYLIST_BYTES:
            raise ForensicsInputError("playlist is too large")
    return bytes(body).decode("utf-8", errors="replace")


def open_source(
    url: str,
    allowed_hosts: Iterable[str],
    *,
    session: Optional[requests.Session] = None,
    limit: int = MAX_REDIRECTS,
) -> tuple[Optional[str], str]:
    """GET *url*, following redirects by hand so every hop is host-checked.

    Returns ``(playlist_text, final_url)``; ``playlist_text`` is None when the
    resource is not an HLS playlist.
    """
    hosts = {h.lower() for h in allowed_hosts if h}
    session = session or requests.Session()
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/vnd.apple.mpegurl, application/x-mpegURL, video/*, */*",
    }
    current = url
    for _ in range(limit + 1):
        try:
            response = session.get(current, headers=headers, allow_redirects=False, stream=True, timeout=(10, 20))
        except requests.RequestException as exc:
            raise ForensicsInputError(f"source request failed: {type(exc).__name__}") from None

        try:
            if response.is_redirect:
                location = response.headers.get("location", "")
                if not location:
                    raise ForensicsInputError(f"source HTTP {response.status_code}")
                nxt = urljoin(current, location)
                # Redirects that drop the token keep the original one.
                nxt = add_token(nxt, token_of(current))
                host = urlsplit(nxt).hostname
                if not host or host.lower() not in hosts:
                    raise ForensicsInputError(f"source redirect to disallowed host {host!r}")
                current = nxt
                continue

            if response.status_code != 200:
                raise ForensicsInputError(f"source HTTP {response.status_code}")
            return _read_playlist(response, current), current
        finally:
            response.close()
    raise ForensicsInputError("source redirect loop")


def fetch_sample(
    url: str,
    allowed_hosts: Iterable[str],
    config,
    *,
    max_samples: int = 60,
    segment_seconds: Optional[int] = None,
    tools: Optional[VideoTools] = None,
    session: Optional[requests.Session] = None,
) -> str:
    """Download the start of *url* into a temp ``.mp4`` and return its path. Caller removes it."""
    allowed_hosts = list(allowed_hosts)
    url = validate_source_url(url, allowed_hosts)
    seconds = target_seconds(max_samples, segment_seconds or config.segment_seconds)
    tools = tools or VideoTools(config)

    playlist_text, final_url = open_source(url, allowed_hosts, session=session)
    is_playlist = playlist_text is not None

    playlist_path = None
    fd, out_path = tempfile.mkstemp(prefix="gallery_identify_", suffix=".mp4")
    os.close(fd)
    try:
        source = final_url
        if is_playlist:
            rewritten = rewrite_playlist(playlist_text, final_url, token_of(url), allowed_hosts)
            fd, playlist_path = tempfile.mkstemp(prefix="gallery_identify_playlist_", suffix=".m3u8")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(rewritten)
            source = playlist_path

        remuxed = tools.remux(source, out_path, seconds=seconds, playlist=is_playlist)
        if not remuxed.ok:
            tip = "try the variant playlist rather than master.m3u8" if is_playlist else "check the URL is a playable video"
            raise ForensicsInputError(f"download failed ({tip}): {remuxed.reason}")
    except BaseException:
        if os.path.exists(out_path):
            os.remove(out_path)
        raise
    finally:
        if playlist_path and os.path.exists(playlist_path):
            os.remove(playlist_path)

    logger.info("Fetched %ss leak sample from %s (playlist=%s)", seconds, urlsplit(url).hostname, is_playlist)
    return out_path
