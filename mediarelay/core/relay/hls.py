from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import quote, urlencode, urljoin, urlsplit

from loguru import logger

HLS_MEDIA_TYPE = "application/vnd.apple.mpegurl"

KEY_TAG = "#EXT-X-KEY"
_URI_TAGS = frozenset(
    {
        KEY_TAG,
        "#EXT-X-MAP",
        "#EXT-X-MEDIA",
        "#EXT-X-I-FRAME-STREAM-INF",
        "#EXT-X-SESSION-KEY",
        "#EXT-X-PRELOAD-HINT",
        "#EXT-X-RENDITION-REPORT",
        "#EXT-X-SESSION-DATA",
    }
)
_QUOTES = ('"', "'")


class LineKind(str, Enum):
    URI_DIRECTIVE = "uri_directive"
    PASSTHROUGH = "passthrough"
    RESOURCE = "resource"


@dataclass(frozen=True)
class ManifestLine:
    kind: LineKind
    text: str


def classify_line(line: str) -> LineKind:
    """
    Tag a playlist line as a URI-bearing directive, a passthrough line
    (other directives, comments, blanks) or a resource reference.
    """
    stripped = line.strip()
    if not stripped:
        return LineKind.PASSTHROUGH
    if stripped.startswith("#"):
        tag = stripped.split(":", 1)[0].upper()
        if tag in _URI_TAGS and ":" in stripped:
            return LineKind.URI_DIRECTIVE
        return LineKind.PASSTHROUGH
    return LineKind.RESOURCE


def parse_manifest(playlist_text: str) -> list[ManifestLine]:
    return [ManifestLine(classify_line(line), line) for line in playlist_text.split("\n")]


def resolve_reference(reference: str, source_url: str) -> str:
    """
    Resolve a playlist reference to an absolute URL.

    Absolute `http(s)://` references are kept verbatim; root-relative ones
    resolve against the source's scheme and host, everything else against
    the source's directory.
    """
    reference = reference.strip()
    if reference.lower().startswith(("http://", "https://")):
        return reference
    return urljoin(source_url, reference)


def base_directory(url: str) -> str:
    """
    Return everything up to and including the last `/` of the URL path.
    """
    parsed = urlsplit(url)
    path = parsed.path or "/"
    return f"{parsed.scheme}://{parsed.netloc}{path[: path.rfind('/') + 1]}"


def build_proxied_url(absolute_url: str, *, proxy_origin: str, route_path: str) -> str:
    """
    Build the same-origin relay URL for an absolute upstream URL.
    """
    query = urlencode({"url": absolute_url}, quote_via=quote)
    return f"{proxy_origin.rstrip('/')}{route_path}?{query}"


def is_already_proxied(url: str, *, proxy_origin: str, route_path: str) -> bool:
    """
    Determine whether a URL already targets this relay's stream route.
    """
    prefix = f"{proxy_origin.rstrip('/')}{route_path}?"
    return url.startswith(prefix)


def _attribute_segments(attrs: str) -> list[str]:
    """
    Split an HLS attribute list on commas, respecting quoted values.

    Segments keep their original spacing, so `",".join()` restores the input.
    A quote only opens a quoted value directly after `=`.
    """
    segments: list[str] = []
    start = 0
    quote_char: Optional[str] = None
    for idx, ch in enumerate(attrs):
        if quote_char:
            if ch == quote_char:
                quote_char = None
            continue
        if ch in _QUOTES and idx > 0 and attrs[idx - 1] == "=":
            quote_char = ch
            continue
        if ch == ",":
            segments.append(attrs[start:idx])
            start = idx + 1
    segments.append(attrs[start:])
    return segments


def _unquote_value(raw: str) -> Optional[str]:
    value = raw.strip()
    if value[:1] in _QUOTES:
        if len(value) < 2 or value[-1] != value[0]:
            return None
        value = value[1:-1]
    return value or None


def _rewrite_uri_attr(
    line: str, base_url: str, rewrite_url: Callable[[str], str]
) -> str:
    """
    Rewrite the `URI` attribute of a single HLS tag line.

    Parameters:
        line (str): A URI-bearing tag line such as `#EXT-X-KEY:METHOD=AES-128,URI="key.bin"`.
        base_url (str): Base URL used to resolve a relative URI.
        rewrite_url (Callable[[str], str]): Maps an absolute URI to its rewritten (proxied) form.

    Returns:
        str: The line with the URI value replaced by the double-quoted rewritten URI; every
            other attribute is left byte-for-byte intact. Lines without a usable URI are returned unchanged.
    """
    logger.trace("Rewriting HLS tag URI in line: {}", line.strip())
    prefix, sep, attrs = line.partition(":")
    if not sep:
        return line

    segments = _attribute_segments(attrs)
    changed = False
    for idx, segment in enumerate(segments):
        key, eq, raw_value = segment.partition("=")
        if not eq or key.strip().upper() != "URI":
            continue
        uri = _unquote_value(raw_value)
        if uri is None:
            continue
        proxied = rewrite_url(resolve_reference(uri, base_url))
        segments[idx] = f'{key}="{proxied}"'
        changed = True

    if not changed:
        return line
    return prefix + sep + ",".join(segments)


def rewrite_hls_playlist(
    playlist_text: str, *, base_url: str, rewrite_url: Callable[[str], str]
) -> str:
    """
    Rewrite every URI in an HLS playlist using a base URL to resolve relative references and a provided URL-rewriting function.

    The text is split on `\\n` and rejoined the same way, so line order, line
    count and any trailing newline survive. A trailing `\\r` is kept on every line.

    Parameters:
        playlist_text (str): The raw HLS playlist text to rewrite.
        base_url (str): URL the playlist was fetched from.
        rewrite_url (Callable[[str], str]): Callable that receives an absolute URI and returns the rewritten/proxied URI.

    Returns:
        str: The playlist text with all URI-bearing tags and resource lines rewritten.
    """
    logger.debug("Rewriting HLS playlist from {}", base_url)
    if not playlist_text:
        return playlist_text
    # A byte order mark would hide the #EXTM3U header.
    playlist_text = playlist_text.removeprefix("\ufeff")

    out_lines: list[str] = []
    for entry in parse_manifest(playlist_text):
        line = entry.text
        eol = ""
        if line.endswith("\r"):
            line, eol = line[:-1], "\r"

        if entry.kind is LineKind.PASSTHROUGH:
            out_lines.append(entry.text)
        elif entry.kind is LineKind.URI_DIRECTIVE:
            out_lines.append(_rewrite_uri_attr(line, base_url, rewrite_url) + eol)
        else:
            logger.trace("Rewriting HLS URI line: {}", line.strip())
            out_lines.append(rewrite_url(resolve_reference(line, base_url)) + eol)

    logger.debug("Rewrote HLS playlist ({} lines)", len(out_lines))
    return "\n".join(out_lines)


def rewrite_manifest(
    manifest_text: str,
    source_url: str,
    proxy_origin: str,
    *,
    route_path: str = "/stream",
) -> str:
    """
    Rewrite a manifest so every reference re-enters the relay's stream route.

    References that already point at the relay are left as they are, which
    makes rewriting an already rewritten manifest a no-op.
    """

    def _to_proxy(absolute_url: str) -> str:
        if is_already_proxied(
            absolute_url, proxy_origin=proxy_origin, route_path=route_path
        ):
            return absolute_url
        return build_proxied_url(
            absolute_url, proxy_origin=proxy_origin, route_path=route_path
        )

    return rewrite_hls_playlist(manifest_text, base_url=source_url, rewrite_url=_to_proxy)
