# bloom/domain/tiers.py
from decimal import Decimal

SUBSCRIPTION_TIERS = {
    "classic": {
        "name": "Classic",
        "product_code": "GB-CLASSIC",
        "price": Decimal("65.00"),
    },
    "luxe": {
        "name": "Luxe",
        "product_code": "GB-LUXE",
        "price": Decimal("95.00"),
    },
    "grand": {
        "name": "Grand",
        "product_code": "GB-GRAND",
        "price": Decimal("145.00"),
    },
}
