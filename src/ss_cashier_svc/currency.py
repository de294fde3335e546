from typing import Callable, Optional

from ss_cashier_svc.config import Settings

SYMBOLS = {
    'usd': '$',
    'aud': '$',
    'cad': '$',
    'eur': '€',
    'gbp': '£',
}


def guess_currency_symbol(currency: str) -> str:
    try:
        return SYMBOLS[currency.lower()]
    except KeyError:
        raise ValueError('Unable to guess symbol for currency. Please explicitly specify it.') from None


class Currency:
    """Billing currency plus the rule used to display minor-unit amounts."""

    def __init__(self, currency: str = 'usd', symbol: Optional[str] = None,
                 formatter: Optional[Callable[[int], str]] = None) -> None:
        self.currency = currency
        self.symbol = symbol or guess_currency_symbol(currency)
        self.formatter = formatter

    @classmethod
    def from_settings(cls, settings: Settings) -> 'Currency':
        return cls(settings.currency, settings.currency_symbol)

    def format_amount(self, amount: int) -> str:
        if self.formatter:
            return self.formatter(amount)
        formatted = f"{amount / 100:,.2f}"
        if formatted.startswith('-'):
            return '-' + self.symbol + formatted.lstrip('-')
        return self.symbol + formatted
