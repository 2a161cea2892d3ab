"""boardgame_etl.payload

Turns raw user input (pasted text, an uploaded file, a share link) into a
JSON value, and builds the share payloads the importer reads back.

Decoding strategies, first one yielding a JSON value wins:
  1. The trimmed text is JSON.
  2. The text carries ``data=<token>``: the token is percent-decoded and read
     as JSON, then as URL-safe base64 JSON.
  3. The whole text is URL-safe base64 of UTF-8 JSON.

When every strategy fails, a recognizable third-party link (settings
``unsupported_link_patterns``) raises UnsupportedSourceError; anything else
raises DecodeError.  Decoding never touches pipeline state.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import urllib.parse
from pathlib import Path
from typing import Any

import requests

from boardgame_etl.import_settings import DEFAULT_SETTINGS, ImportSettings
from boardgame_etl.models import Catalog, ExportDataset, ExtensionRef, Match, PlayerRef
from boardgame_etl.shared import DecodeError, UnsupportedSourceError

log = logging.getLogger(__name__)

DECODE_ERROR_MESSAGE = "Could not read the data. Check that the code is complete."
UNSUPPORTED_SOURCE_MESSAGE = (
    "This link format cannot be read directly. Export the data as JSON and import that instead."
)

_MISSING = object()
_BASE64_RE = re.compile(r"[A-Za-z0-9+/_-]+={0,2}")
_DATA_PARAM_RE = re.compile(r"data=([^&#\s]*)")


# ---------------------------------------------------------------------------
# Strategy helpers
# ---------------------------------------------------------------------------

def _try_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return _MISSING


def _b64_to_text(text: str) -> str | None:
    """Decode standard or URL-safe base64 (padding optional) to UTF-8 text."""
    compact = "".join(text.split())
    if not compact or not _BASE64_RE.fullmatch(compact):
        return None
    std = compact.rstrip("=").replace("-", "+").replace("_", "/")
    std += "=" * (-len(std) % 4)
    try:
        raw = base64.b64decode(std, validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, ValueError):
        return None


def _try_base64_json(text: str) -> Any:
    decoded = _b64_to_text(text)
    if decoded is None:
        return _MISSING
    return _try_json(decoded)


def _extract_data_param(text: str) -> str | None:
    m = _DATA_PARAM_RE.search(text)
    if not m or not m.group(1):
        return None
    return urllib.parse.unquote(m.group(1))


def is_unsupported_link(text: str, settings: ImportSettings = DEFAULT_SETTINGS) -> bool:
    lowered = text.lower()
    return any(p.lower() in lowered for p in settings.unsupported_link_patterns if p)


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

def decode_payload(text: str | None, settings: ImportSettings = DEFAULT_SETTINGS) -> Any:
    """Return the JSON value carried by text.

    Raises:
        UnsupportedSourceError: text is a known third-party link, not an export.
        DecodeError: no strategy produced a JSON value.
    """
    if text is None or not text.strip():
        raise DecodeError(DECODE_ERROR_MESSAGE)
    clean = text.strip()

    value = _try_json(clean)
    if value is not _MISSING:
        log.debug("Payload decoded as raw JSON")
        return value

    if "data=" in clean:
        token = _extract_data_param(clean)
        if token:
            for strategy in (_try_json, _try_base64_json):
                value = strategy(token)
                if value is not _MISSING:
                    log.debug("Payload decoded from data= parameter via %s", strategy.__name__)
                    return value

    value = _try_base64_json(clean)
    if value is not _MISSING:
        log.debug("Payload decoded as base64 JSON")
        return value

    if is_unsupported_link(clean, settings):
        raise UnsupportedSourceError(UNSUPPORTED_SOURCE_MESSAGE)
    raise DecodeError(DECODE_ERROR_MESSAGE)


# ---------------------------------------------------------------------------
# Encoder / share URL
# ---------------------------------------------------------------------------

def encode_payload(obj: Any) -> str:
    """Compact JSON → UTF-8 → standard base64 text."""
    raw = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def build_share_url(
    base_url: str,
    obj: Any,
    settings: ImportSettings = DEFAULT_SETTINGS,
) -> str | None:
    """Return ``<base>#/import?data=<encoded>``, or None when it is too long to share."""
    token = urllib.parse.quote(encode_payload(obj), safe="")
    url = f"{base_url.split('#')[0]}#/import?data={token}"
    if len(url) > settings.share_url_max_length:
        return None
    return url


def build_match_export(
    matches: list[Match],
    catalog: Catalog,
    settings: ImportSettings = DEFAULT_SETTINGS,
) -> ExportDataset:
    """Package library matches as a native export dataset.

    Only players and extensions the matches reference are included.  The
    source title is the game's title when every match belongs to one game.
    """
    player_ids = {r.player_id for m in matches for r in m.results}
    players = [PlayerRef(id=p.id, name=p.name) for p in catalog.players if p.id in player_ids]

    ext_ids = {eid for m in matches for eid in (m.extension_ids or [])}
    extensions: list[ExtensionRef] = []
    seen: set[str] = set()
    for g in catalog.games:
        for e in g.extensions:
            if e.id in ext_ids and e.id not in seen:
                seen.add(e.id)
                extensions.append(ExtensionRef(id=e.id, title=e.title))

    source_title = settings.mixed_export_title
    game_ids = {m.game_id for m in matches}
    if len(game_ids) == 1:
        game = catalog.game(next(iter(game_ids)))
        if game is not None:
            source_title = game.title

    dataset = ExportDataset(
        source_game_title=source_title,
        matches=list(matches),
        players=players,
        extensions=extensions,
    )
    dataset.repair_references()
    return dataset


# ---------------------------------------------------------------------------
# Source reader
# ---------------------------------------------------------------------------

def read_payload_source(
    source: str,
    settings: ImportSettings = DEFAULT_SETTINGS,
    timeout: int = 30,
    session: requests.Session | None = None,
) -> str:
    """Resolve a payload source to text.

    - Existing local path → file contents.
    - Share link carrying ``data=`` or a known third-party link → unchanged
      (the decoder handles both).
    - Any other http(s) URL → fetched body.
    - Anything else → treated as literal payload text.
    """
    stripped = source.strip()
    if not stripped.lower().startswith(("http://", "https://")):
        path = Path(stripped)
        try:
            if path.is_file():
                return path.read_text(encoding="utf-8")
        except OSError:
            pass
        return source

    if "data=" in stripped or is_unsupported_link(stripped, settings):
        return stripped

    http = session or requests.Session()
    try:
        resp = http.get(stripped, timeout=timeout)
    except requests.RequestException as exc:
        log.error("Payload fetch failed for %s: %s", stripped, exc)
        raise DecodeError(f"{DECODE_ERROR_MESSAGE} ({exc})") from exc
    if resp.status_code != 200:
        log.error("Payload fetch for %s returned status %s", stripped, resp.status_code)
        raise DecodeError(f"{DECODE_ERROR_MESSAGE} (HTTP {resp.status_code})")
    return resp.text
