"""
Bank challenge rendering.

The initiation response carries the gateway's 3DS page as base64. Before the
browser is sent to the bank this module:
1. Decodes it tolerantly (standard or URL-safe alphabet, missing padding,
   non-UTF-8 pages re-encoded in their own charset)
2. Adds hidden ``paymentId`` / ``status=success`` fields to every form, since
   some gateways' return forms omit them
3. Wraps the result in an invisible form that auto-posts to the same-origin
   relay endpoint, which then redirects to the bank

If the relay form cannot be built the decoded markup is served directly.
"""

import base64
import binascii
import codecs
import re
from dataclasses import dataclass
from typing import Optional, Tuple

import lxml.html
from lxml import etree
from lxml.html import builder as E

from ..core.errors import RelayError
from ..core.logging import get_logger

logger = get_logger(__name__)

RELAY_FORM_ID = "threeds-relay"
RELAY_FIELD = "content"
DEFAULT_SUBMIT_DELAY_MS = 100

_DOCUMENT_PATTERN = re.compile(r"<\s*(!doctype|html|head|body)\b", re.IGNORECASE)
_CHARSET_PATTERN = re.compile(rb"<meta[^>]*?charset\s*=\s*[\"']?([A-Za-z0-9_:.-]+)", re.IGNORECASE)

# Decodes any byte string and encodes back to the same bytes.
FALLBACK_CHARSET = "latin-1"


@dataclass(frozen=True)
class RelayDocument:
    """What to hand the browser next."""
    html: str
    payload: str
    fallback: bool = False


def _declared_charset(raw: bytes) -> Optional[str]:
    match = _CHARSET_PATTERN.search(raw)
    if not match:
        return None
    try:
        return codecs.lookup(match.group(1).decode("ascii")).name
    except LookupError:
        return None


def _decode_markup(raw: bytes) -> Tuple[str, str]:
    """Text of a challenge page plus the charset that reproduces its bytes.

    Tries UTF-8, then the page's own <meta charset>, then latin-1, which
    accepts anything. Gateways serve ISO-8859-9 and windows-1254 pages too.
    """
    candidates = ["utf-8"]
    declared = _declared_charset(raw)
    if declared and declared not in candidates:
        candidates.append(declared)
    for charset in candidates:
        try:
            return raw.decode(charset), charset
        except UnicodeDecodeError:
            continue
    return raw.decode(FALLBACK_CHARSET), FALLBACK_CHARSET


def decode_challenge_payload(content: str) -> Tuple[str, str]:
    """
    Decode base64 challenge content.

    Returns:
        (markup, charset). Content that is already markup, or is not base64
        of markup, comes back unchanged with charset "utf-8".
    """
    if (content or "").lstrip().startswith("<"):
        return content, "utf-8"
    clean = re.sub(r"\s+", "", content or "")
    clean = clean.replace("-", "+").replace("_", "/")
    if len(clean) % 4:
        clean += "=" * (4 - len(clean) % 4)
    try:
        raw = base64.b64decode(clean, validate=True)
    except (binascii.Error, ValueError):
        return content, "utf-8"
    decoded, charset = _decode_markup(raw)
    if "<" in decoded and ">" in decoded:
        if charset != "utf-8":
            logger.info("Challenge markup is not UTF-8", charset=charset)
        return decoded, charset
    return content, "utf-8"


def decode_challenge(content: str) -> str:
    """Decode base64 challenge content; non-markup input is returned as-is."""
    return decode_challenge_payload(content)[0]


def encode_challenge(markup: str, charset: str = "utf-8") -> str:
    return base64.b64encode(markup.encode(charset, errors="xmlcharrefreplace")).decode("ascii")


def _has_field(form, name: str) -> bool:
    return any(field.get("name") == name for field in form.iter("input"))


def inject_return_fields(markup: str, payment_id: Optional[str]) -> str:
    """Add hidden paymentId/status inputs to each form lacking them.

    Markup without forms (or when no payment id is known) is returned
    unchanged.
    """
    payment_id = (payment_id or "").strip()
    if not payment_id or "<form" not in markup.lower():
        return markup

    is_document = bool(_DOCUMENT_PATTERN.search(markup))
    if is_document:
        root = lxml.html.document_fromstring(markup)
    else:
        root = lxml.html.fragment_fromstring(markup, create_parent="div")

    injected = 0
    for form in list(root.iter("form")):
        for name, value in (("paymentId", payment_id), ("status", "success")):
            if not _has_field(form, name):
                form.append(E.INPUT(type="hidden", name=name, value=value))
                injected += 1

    if not injected:
        return markup

    logger.debug("Injected return fields into challenge forms", fields=injected)

    if is_document:
        # Serializing the tree (not the root element) keeps the doctype.
        return lxml.html.tostring(root.getroottree(), encoding="unicode", method="html")
    return (root.text or "") + "".join(
        lxml.html.tostring(child, encoding="unicode", method="html") for child in root
    )


def build_relay_form(payload: str, relay_url: str, submit_delay_ms: int = DEFAULT_SUBMIT_DELAY_MS) -> str:
    """Invisible form that posts the encoded challenge to the relay endpoint."""
    form = E.FORM(
        E.INPUT(type="hidden", name=RELAY_FIELD, value=payload),
        id=RELAY_FORM_ID,
        method="POST",
        action=relay_url,
        target="_self",
        enctype="application/x-www-form-urlencoded",
        style="display:none",
    )
    form.set("accept-charset", "UTF-8")
    script = E.SCRIPT(
        "setTimeout(function () { document.getElementById('%s').submit(); }, %d);"
        % (RELAY_FORM_ID, int(submit_delay_ms))
    )
    page = E.HTML(
        E.HEAD(E.META(charset="utf-8"), E.TITLE("Redirecting to your bank")),
        E.BODY(form, script),
    )
    return lxml.html.tostring(page, encoding="unicode", method="html", doctype="<!DOCTYPE html>")


def render_challenge(
    encoded_content: str,
    payment_id: Optional[str],
    relay_url: str,
    submit_delay_ms: int = DEFAULT_SUBMIT_DELAY_MS,
) -> RelayDocument:
    """
    Turn the backend's challenge content into the page the browser loads.

    Args:
        encoded_content: threeDSHtmlContent from initiation (usually base64)
        payment_id: Payment id to inject into the gateway's forms
        relay_url: Same-origin relay endpoint
        submit_delay_ms: Delay before the relay form posts itself

    Returns:
        RelayDocument; ``fallback`` is True when the raw challenge is served
    """
    html, charset = decode_challenge_payload(encoded_content)

    try:
        html = inject_return_fields(html, payment_id)
    except (etree.ParserError, ValueError) as e:
        logger.warning("Could not parse challenge markup, relaying unmodified", error=str(e))

    payload = encode_challenge(html, charset)
    try:
        page = _build_relay_page(payload, relay_url, submit_delay_ms)
    except RelayError as e:
        logger.error("Relay form construction failed, serving challenge directly", error=str(e))
        return RelayDocument(html=html, payload=payload, fallback=True)

    logger.info("Relay document built", relay_url=relay_url, payload_length=len(payload))
    return RelayDocument(html=page, payload=payload)


def _build_relay_page(payload: str, relay_url: str, submit_delay_ms: int) -> str:
    if not relay_url:
        raise RelayError("No relay endpoint configured")
    try:
        return build_relay_form(payload, relay_url, submit_delay_ms)
    except (ValueError, TypeError, etree.LxmlError) as e:
        raise RelayError(str(e)) from e
