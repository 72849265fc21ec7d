"""Decoding scanned QR payloads and shaping claim results for clients."""

from __future__ import annotations

import re
from urllib.parse import parse_qs, unquote, urlparse

from claim_engine import IDENTIFIER_CODE, IDENTIFIER_TOKEN, ClaimOutcome, ClaimResult


_CODE_RE = re.compile(r"[A-Za-z0-9\-_]+")
_SHORT_LINK_RE = re.compile(r"/r/([^/]+)$", re.IGNORECASE)

STATUS_MESSAGES = {
    ClaimOutcome.CLAIMED: "Added to your collection",
    ClaimOutcome.ALREADY_OWNER: "Already in your collection",
    ClaimOutcome.OWNED_BY_OTHER: "Already claimed by another user.",
    ClaimOutcome.NOT_FOUND: "Card not found.",
    ClaimOutcome.BLOCKED: "Your account is blocked from claiming cards.",
    ClaimOutcome.NOT_AUTHENTICATED: "Authentication required",
}
ERROR_MESSAGE = "Something went wrong. Please try again."

HTTP_STATUS = {
    ClaimOutcome.CLAIMED: 200,
    ClaimOutcome.ALREADY_OWNER: 200,
    ClaimOutcome.OWNED_BY_OTHER: 409,
    ClaimOutcome.NOT_FOUND: 404,
    ClaimOutcome.BLOCKED: 403,
    ClaimOutcome.NOT_AUTHENTICATED: 401,
}

# Wire tags that differ from the outcome value. Signed-out scans go out as a
# generic "error"; the 401 tells clients to sign in.
WIRE_STATUS = {
    ClaimOutcome.NOT_AUTHENTICATED: "error",
}

# Outcomes that show the card to the scanner.
_SHOW_CARD = (ClaimOutcome.CLAIMED, ClaimOutcome.ALREADY_OWNER)


def extract_code_or_token(text):
    """Return (kind, value) for a decoded QR string, or None if nothing usable.

    - ``https://host/claim?token=X`` -> ("token", X); path must be exactly ``/claim``
    - ``https://host/r/CODE``        -> ("code", CODE)
    - any other URL                  -> ("code", last path segment)
    - plain text                     -> ("code", first [A-Za-z0-9-_] run)
    """
    text = (text or "").strip()
    if not text:
        return None

    if re.match(r"^https?://", text, re.IGNORECASE):
        parsed = urlparse(text)

        if parsed.path == "/claim":
            token = (parse_qs(parsed.query).get("token") or [""])[0].strip()
            if not token:
                # A claim link without its token names no card.
                return None
            return IDENTIFIER_TOKEN, token

        m = _SHORT_LINK_RE.search(parsed.path)
        if m:
            return IDENTIFIER_CODE, unquote(m.group(1))

        segments = [unquote(s) for s in parsed.path.split("/") if s]
        if segments:
            return IDENTIFIER_CODE, segments[-1]
        return None

    m = _CODE_RE.search(text)
    if not m:
        return None
    return IDENTIFIER_CODE, m.group(0)


def claim_response(result: ClaimResult) -> tuple[dict, int]:
    """JSON body and HTTP status for a claim result."""
    body = {
        "success": result.ok,
        "status": WIRE_STATUS.get(result.outcome, result.outcome.value),
        "message": STATUS_MESSAGES[result.outcome],
    }
    if result.card is not None and result.outcome in _SHOW_CARD:
        body["card"] = result.card.summary()
    return body, HTTP_STATUS[result.outcome]


def error_response() -> tuple[dict, int]:
    return {"success": False, "status": "error", "message": ERROR_MESSAGE}, 503
