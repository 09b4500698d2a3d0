# menugen/utils/currency_detector.py
from typing import Iterable, Optional
import re
import logging

logger = logging.getLogger(__name__)

# Currency symbol to code mapping; multi-character symbols first so "C$"
# wins over "$"
CURRENCY_SYMBOLS = {
    'NZ$': 'NZD',
    'HK$': 'HKD',
    'C$': 'CAD',
    'A$': 'AUD',
    'S$': 'SGD',
    'R$': 'BRL',
    'CHF': 'CHF',
    'zł': 'PLN',
    'Kč': 'CZK',
    'kr': 'SEK',  # Could be DKK, NOK as well
    '$': 'USD',
    '€': 'EUR',
    '£': 'GBP',
    '¥': 'JPY',
    '₹': 'INR',
    '₽': 'RUB',
    '₩': 'KRW',
    '₪': 'ILS',
    '₦': 'NGN',
    '₨': 'PKR',
    '৳': 'BDT',
    '₡': 'CRC',
    '₱': 'PHP',
    '₫': 'VND',
    '₵': 'GHS',
    '₸': 'KZT',
    '₴': 'UAH',
}

# Common currency codes
CURRENCY_CODES = {
    'USD', 'EUR', 'GBP', 'JPY', 'CNY', 'CAD', 'AUD', 'CHF', 'SEK', 'NOK', 'DKK',
    'PLN', 'CZK', 'HUF', 'RUB', 'INR', 'KRW', 'SGD', 'HKD', 'NZD', 'MXN', 'BRL',
    'ZAR', 'THB', 'MYR', 'IDR', 'PHP', 'VND', 'EGP', 'ILS', 'TRY', 'AED', 'SAR'
}

_CODE_PATTERN = re.compile(r'\b(' + '|'.join(sorted(CURRENCY_CODES)) + r')\b', re.IGNORECASE)


def detect_currency_from_price(price: str) -> Optional[str]:
    """Currency code implied by a single price string, if any"""
    if not price:
        return None

    match = _CODE_PATTERN.search(price)
    if match:
        return match.group(1).upper()

    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in price:
            return code

    return None


def detect_currency_from_prices(prices: Iterable[str], default: str = 'USD') -> str:
    """
    Detect the base currency of a menu from its price strings

    Args:
        prices: Raw price strings as printed on the menu
        default: Code to use when nothing identifies a currency

    Returns:
        The most frequently implied currency code, or ``default``
    """
    counts = {}
    for price in prices:
        code = detect_currency_from_price(price)
        if code:
            counts[code] = counts.get(code, 0) + 1

    if not counts:
        return default

    detected = max(counts, key=counts.get)
    if len(counts) > 1:
        logger.warning(f"Multiple currencies found in prices {counts}, using {detected}")
    return detected
