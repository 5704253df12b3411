"""Offline quote extraction with regular expressions.

Recognizes the common "<product> [-] R$ <price> <conditions>" line that
suppliers broadcast. Deterministic and always available, so it doubles as a
fallback when no language model is configured.
"""
from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation

from pricebook.domain import ExtractedFact
from pricebook.errors import NoExtraction
from pricebook.pipelines.normalization import clean_message_text, normalize_whitespace

logger = logging.getLogger(__name__)

# Name must start with a letter and stay on one line
_OFFER_RE = re.compile(
    r"(?P<name>[^\W\d_][\w .,/%'()+&-]*?)\s*(?:[-:]\s*)?R\$\s*(?P<price>\d+(?:[.,]\d+)*)",
    re.IGNORECASE,
)

# Connectors that sit between the product and its price
_LEAD_INS = {"por", "a", "de", "apenas", "só", "so", "at", "for", "only", "is", "custa", "sai"}

_EDGE_PUNCT = " .,;:-/"


def parse_price_token(token: str) -> Decimal:
    """Parse '20,00', '8.50', '1.234,56' or '1,234.56' into a Decimal.

    Raises:
        NoExtraction: token is not a number
    """
    token = token.strip()
    if "," in token and "." in token:
        if token.rfind(",") > token.rfind("."):
            token = token.replace(".", "").replace(",", ".")
        else:
            token = token.replace(",", "")
    elif "," in token:
        head, _, tail = token.rpartition(",")
        token = head.replace(",", "") + "." + tail
    elif token.count(".") > 1:
        head, _, tail = token.rpartition(".")
        # '1.234.567' has only thousands groups
        token = (head + tail).replace(".", "") if len(tail) == 3 else head.replace(".", "") + "." + tail

    try:
        return Decimal(token)
    except InvalidOperation as e:
        raise NoExtraction(f"unparseable price {token!r}") from e


def _clean_name(raw: str) -> str:
    words = normalize_whitespace(raw).strip(_EDGE_PUNCT).split(" ")
    while words and words[-1].casefold().strip(_EDGE_PUNCT) in _LEAD_INS:
        words.pop()
    return " ".join(words).strip(_EDGE_PUNCT)


class PatternExtractor:
    """First "<name> R$ <price>" mention wins."""

    available = True

    async def extract(self, text: str) -> ExtractedFact:
        cleaned = clean_message_text(text)
        if not cleaned:
            raise NoExtraction("empty message")

        for line in cleaned.splitlines():
            match = _OFFER_RE.search(line)
            if not match:
                continue

            name = _clean_name(match.group("name"))
            if not name:
                continue
            price = parse_price_token(match.group("price"))
            if price <= 0:
                raise NoExtraction(f"non-positive price {price}")

            conditions = line[match.end():].strip(_EDGE_PUNCT) or None
            logger.debug(f"Pattern matched {name!r} at {price}")
            return ExtractedFact(product_name=name, price=price, conditions=conditions)

        raise NoExtraction("no 'R$' price mention found")
