from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from errors import InvalidInput

# Author: Daniel Neugent

CENTS = Decimal("0.01")
MAX_PRICE = Decimal("99999999.99")


class Role(str, Enum):
    MEMBER = "Member"
    ADMIN = "Admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    def at_least(self, other: "Role") -> bool:
        """Return True when this role grants everything ``other`` grants."""
        return self.rank >= other.rank


_ROLE_RANKS = {Role.MEMBER: 0, Role.ADMIN: 1}


class GalleryCategory(Enum):
    """Closed set of subject tags a gallery can be filed under."""

    PIERSI = "Piersi"
    TYLEK = "Tyłek"
    CIPKA = "Cipka"
    CALE_CIALO = "Całe Ciało"
    OTWIERAM_CIPKE = "Otwieram Cipkę dla Ciebie"
    ANALNE = "Analne"
    ZABAWY_WIBRATOREM = "Zabawy wibratorem"
    ORGAZM = "Orgazm"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "GalleryCategory":
        label = (raw or "").strip()
        for category in cls:
            if category.value == label:
                return category
        raise InvalidInput("Nieznana kategoria galerii.")

    @property
    def label(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value


def parse_price(raw: Optional[str]) -> Optional[Decimal]:
    """Parse a form price. Blank means the gallery is free."""
    text = (raw or "").strip().replace(",", ".")
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise InvalidInput("Cena musi być liczbą.") from None
    if not value.is_finite():
        raise InvalidInput("Cena musi być liczbą.")
    if value < 0:
        raise InvalidInput("Cena nie może być ujemna.")
    if value.as_tuple().exponent < -2:
        raise InvalidInput("Cena może mieć najwyżej dwa miejsca po przecinku.")
    if value > MAX_PRICE:
        raise InvalidInput("Cena jest zbyt wysoka.")
    return value.quantize(CENTS)


def format_price(price: Optional[Decimal]) -> str:
    if price is None:
        return "0.00"
    return str(price.quantize(CENTS))
