# menugen/utils/price_parser.py
import re
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from menugen.utils.currency_detector import CURRENCY_CODES, CURRENCY_SYMBOLS

logger = logging.getLogger(__name__)

_CODE_PATTERN = re.compile(r'\b(' + '|'.join(sorted(CURRENCY_CODES)) + r')\b', re.IGNORECASE)
_NUMBER = re.compile(r'^\d+(\.\d+)?$')
_DECIMAL_COMMA = re.compile(r'^\d+,\d{1,2}$')
_THOUSANDS = re.compile(r'(?<=\d)[,\s\'](?=\d{3}\b)')

# Largest value the price_cents column (Postgres integer) holds
MAX_PRICE_CENTS = 2 ** 31 - 1


def parse_price_cents(raw_price: Optional[str]) -> Optional[int]:
    """
    Convert printed price text to integer minor units

    "$12.50" -> 1250, "1,299" -> 129900, "12,50 €" -> 1250.
    Returns None for anything that is not a single positive amount that
    fits the price column ("Market Price", "12-15", "", "0", "$25,000,000").
    """
    if not raw_price:
        return None

    text = _CODE_PATTERN.sub("", raw_price)
    for symbol in CURRENCY_SYMBOLS:
        text = text.replace(symbol, "")
    text = text.strip()

    if _DECIMAL_COMMA.match(text):
        text = text.replace(",", ".")
    else:
        text = _THOUSANDS.sub("", text)

    if not _NUMBER.match(text):
        return None

    try:
        cents = (Decimal(text) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        logger.warning(f"Invalid price format: {raw_price!r}")
        return None

    if cents <= 0 or cents > MAX_PRICE_CENTS:
        return None
    return int(cents)
