# bloom/services/payments/card_validation.py
import re
from datetime import date

from bloom.domain.errors import InvalidInput
from bloom.domain.types import CardFields


def luhn_ok(number: str) -> bool:
    total = 0
    for i, ch in enumerate(reversed(number)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def validate_card(card: CardFields, today: date | None = None) -> CardFields:
    """
    Local plausibility checks, run before any processor round trip.
    Messages never echo the submitted values.
    """
    today = today or date.today()

    number = re.sub(r"[\s-]", "", card.number or "")
    if not re.fullmatch(r"[0-9]{13,19}", number) or not luhn_ok(number):
        raise InvalidInput("Card number is invalid")

    month = card.exp_month
    if not isinstance(month, int) or not 1 <= month <= 12:
        raise InvalidInput("Expiry month is invalid")

    year = card.exp_year
    if not isinstance(year, int) or year < 0:
        raise InvalidInput("Expiry year is invalid")
    if year < 100:
        year += 2000
    if (year, month) < (today.year, today.month):
        raise InvalidInput("Card has expired")
    if year > today.year + 20:
        raise InvalidInput("Expiry year is invalid")

    cvv = (card.cvv or "").strip()
    #amex: 4 digit CID
    expected = (4,) if number[:2] in ("34", "37") else (3,)
    if not re.fullmatch(r"[0-9]{3,4}", cvv) or len(cvv) not in expected:
        raise InvalidInput("Security code is invalid")

    return CardFields(number=number, exp_month=month, exp_year=year, cvv=cvv)
