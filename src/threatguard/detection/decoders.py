"""Payload decoders: expose simply-obfuscated content to the pattern scanners.

Attackers routinely percent-encode or HTML-entity-encode payloads to slip past
naive signature matching. Each decoder returns the decoded text, or the input
unchanged when there is nothing to decode.
"""

from __future__ import annotations

import html
import re
from urllib.parse import unquote_plus

# A single percent-encoded byte
_URL_ENCODED_PATTERN = re.compile(r"%[0-9a-fA-F]{2}")

# Numeric character references (&#60; / &#x3c;) and named entities (&lt;)
_HTML_ENTITY_PATTERN = re.compile(r"&(?:#\d{1,7}|#[xX][0-9a-fA-F]{1,6}|[a-zA-Z]{2,8});")

# Nested encodings deeper than this are left as-is.
_MAX_DECODE_ROUNDS = 3


def url_decode(text: str) -> str:
    """Percent-decode *text*, repeating for double-encoded payloads.

    Malformed escapes are kept verbatim rather than raising.
    """
    decoded = text
    for _ in range(_MAX_DECODE_ROUNDS):
        if not _URL_ENCODED_PATTERN.search(decoded) and "+" not in decoded:
            break
        candidate = unquote_plus(decoded, errors="replace")
        if candidate == decoded:
            break
        decoded = candidate
    return decoded


def html_entity_decode(text: str) -> str:
    """Resolve HTML character references in *text*."""
    if not _HTML_ENTITY_PATTERN.search(text):
        return text
    return html.unescape(text)


def decoded_variants(text: str, *, html_entities: bool = False) -> list[tuple[str, str]]:
    """Return ``(encoding, decoded)`` pairs that differ from *text*."""
    variants: list[tuple[str, str]] = []
    url_decoded = url_decode(text)
    if url_decoded != text:
        variants.append(("url_encoded", url_decoded))
    if html_entities:
        entity_decoded = html_entity_decode(text)
        if entity_decoded != text:
            variants.append(("html_entity", entity_decoded))
    return variants
