"""
Symbol Normalization

Maps between each exchange's native market spelling and the canonical global
symbol used by calling code.

Canonical symbols:
    - always uppercase
    - base currency first, quote currency second
    - separated by '-'
    Example: BTC-USD, read as "x BTC is worth y USD"

Two strategies:
    AlgorithmicSymbolNormalizer
        Separator substitution, case folding, base/quote reordering and
        whole-currency aliases (e.g. Binance "BCC" <-> global "BCH").
        Spellings without a separator ("BTCUSDT") are split on the longest
        known quote currency.
    TableSymbolNormalizer
        Explicit lookup for exchanges whose spelling cannot be derived
        (Kraken "XXBTZUSD"). Both directions are built once from a single
        mapping and are immutable afterwards.

Both fail closed: anything that cannot be mapped raises UnknownSymbolError
naming the offending symbol. Nothing is guessed.
"""

from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Protocol, Tuple, runtime_checkable

from core.errors import UnknownSymbolError


GLOBAL_SYMBOL_SEPARATOR = "-"

DEFAULT_QUOTE_CURRENCIES = (
    "USDT", "USDC", "BUSD", "TUSD", "FDUSD", "DAI",
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "TRY", "BRL",
    "BTC", "ETH", "BNB", "XRP", "TRX", "DOGE",
)


@runtime_checkable
class SymbolNormalizer(Protocol):
    """Bidirectional symbol mapping for one exchange."""

    def to_exchange_symbol(self, canonical: str) -> str:
        ...

    def to_canonical_symbol(self, native: str) -> str:
        ...


def split_canonical(symbol: str, exchange: Optional[str] = None) -> Tuple[str, str]:
    """
    Split a canonical symbol into (base, quote).

    Raises:
        UnknownSymbolError: If the symbol is not BASE-QUOTE
    """
    if not symbol or not symbol.strip():
        raise UnknownSymbolError(str(symbol), exchange=exchange, reason="empty symbol")

    pieces = symbol.strip().upper().split(GLOBAL_SYMBOL_SEPARATOR)
    if len(pieces) != 2 or not pieces[0] or not pieces[1]:
        raise UnknownSymbolError(symbol, exchange=exchange, reason="expected BASE-QUOTE")

    return pieces[0], pieces[1]


def join_canonical(base: str, quote: str) -> str:
    return f"{base.upper()}{GLOBAL_SYMBOL_SEPARATOR}{quote.upper()}"


# ============================================
# Algorithmic Strategy
# ============================================

class AlgorithmicSymbolNormalizer:
    """
    String-transform normalizer.

    Attributes:
        separator: Native separator ("" for none, e.g. Binance "BTCUSDT")
        reversed: Native spelling lists quote first (e.g. Bittrex "USD-BTC")
        uppercase: Native spelling is uppercase
        currency_aliases: native currency -> global currency (whole codes only)
        quote_currencies: Quote codes used to split separator-less spellings

    Example:
        >>> n = AlgorithmicSymbolNormalizer(separator="", uppercase=True)
        >>> n.to_exchange_symbol("BTC-USDT")
        'BTCUSDT'
        >>> n.to_canonical_symbol("BTCUSDT")
        'BTC-USDT'
    """

    def __init__(
        self,
        separator: str = GLOBAL_SYMBOL_SEPARATOR,
        reversed: bool = False,
        uppercase: bool = True,
        currency_aliases: Optional[Mapping[str, str]] = None,
        quote_currencies: Iterable[str] = DEFAULT_QUOTE_CURRENCIES,
        exchange: Optional[str] = None
    ):
        if len(separator) > 1:
            raise ValueError("Native separator must be a single character or empty")

        self.separator = separator
        self.reversed = reversed
        self.uppercase = uppercase
        self.exchange = exchange

        aliases = {native.upper(): canonical.upper() for native, canonical in (currency_aliases or {}).items()}
        inverse = {canonical: native for native, canonical in aliases.items()}
        if len(inverse) != len(aliases):
            raise ValueError("Currency aliases must map one native code to one global code")

        self._to_global = MappingProxyType(aliases)
        self._to_native = MappingProxyType(inverse)

        # Longest first so "USDT" wins over "USD"
        native_quotes = {self._to_native.get(q.upper(), q.upper()) for q in quote_currencies}
        self._quotes = tuple(sorted(native_quotes, key=len, reverse=True))

        # Native symbol -> (first, second) as published by the exchange
        self._learned: Dict[str, Tuple[str, str]] = {}

    def _case(self, value: str) -> str:
        return value.upper() if self.uppercase else value.lower()

    def _native_currency(self, currency: str) -> str:
        if currency in self._to_global and currency not in self._to_native:
            # A native spelling is not a global code; its global form maps here
            raise UnknownSymbolError(currency, exchange=self.exchange, reason="currency is a native alias")
        return self._to_native.get(currency, currency)

    def _global_currency(self, currency: str) -> str:
        currency = currency.upper()
        if currency in self._to_native and currency not in self._to_global:
            # A global code that this exchange spells differently never
            # appears natively
            raise UnknownSymbolError(currency, exchange=self.exchange, reason="currency has a native alias")
        return self._to_global.get(currency, currency)

    def learn(self, native: str, base: str, quote: str) -> None:
        """
        Record how the exchange splits one native symbol.

        Separator-less spellings are otherwise split on the known quote
        currencies; a listed pair quoted in anything else (e.g. "BTCPLN")
        only maps once its market metadata has been learned.

        Args:
            native: Native symbol as listed
            base: Native base currency code
            quote: Native quote currency code
        """
        base, quote = base.upper(), quote.upper()
        self._learned[native.strip().upper()] = (quote, base) if self.reversed else (base, quote)

    def to_exchange_symbol(self, canonical: str) -> str:
        base, quote = split_canonical(canonical, self.exchange)
        first, second = (quote, base) if self.reversed else (base, quote)
        return self._case(f"{self._native_currency(first)}{self.separator}{self._native_currency(second)}")

    def _split_native(self, native: str) -> Tuple[str, str]:
        upper = native.upper()

        if upper in self._learned:
            return self._learned[upper]

        if self.separator:
            pieces = upper.split(self.separator.upper())
            if len(pieces) != 2 or not pieces[0] or not pieces[1]:
                raise UnknownSymbolError(native, exchange=self.exchange, reason=f"expected one '{self.separator}'")
            return pieces[0], pieces[1]

        # No separator: the currency at the quote end must be a known quote
        for quote in self._quotes:
            if self.reversed and upper.startswith(quote) and len(upper) > len(quote):
                return quote, upper[len(quote):]
            if not self.reversed and upper.endswith(quote) and len(upper) > len(quote):
                return upper[:-len(quote)], quote

        raise UnknownSymbolError(native, exchange=self.exchange, reason="no known quote currency")

    def to_canonical_symbol(self, native: str) -> str:
        if not native or not native.strip():
            raise UnknownSymbolError(str(native), exchange=self.exchange, reason="empty symbol")

        first, second = self._split_native(native.strip())
        base, quote = (second, first) if self.reversed else (first, second)
        return join_canonical(self._global_currency(base), self._global_currency(quote))


# ============================================
# Table Strategy
# ============================================

class TableSymbolNormalizer:
    """
    Explicit canonical <-> native lookup.

    Both maps are derived from the single `mapping` argument and frozen, so
    the two directions cannot drift apart. Native lookups are
    case-insensitive; the native spelling returned is the table's.

    Example:
        >>> n = TableSymbolNormalizer({"BTC-USD": "XXBTZUSD"})
        >>> n.to_canonical_symbol("xxbtzusd")
        'BTC-USD'
    """

    def __init__(self, mapping: Mapping[str, str], exchange: Optional[str] = None):
        self.exchange = exchange

        to_native: Dict[str, str] = {}
        to_canonical: Dict[str, str] = {}

        for canonical, native in mapping.items():
            base, quote = split_canonical(canonical, exchange)
            canonical = join_canonical(base, quote)
            key = native.upper()

            if canonical in to_native:
                raise ValueError(f"Duplicate canonical symbol in table: {canonical}")
            if key in to_canonical:
                raise ValueError(
                    f"Native symbol {native} maps to both {to_canonical[key]} and {canonical}"
                )

            to_native[canonical] = native
            to_canonical[key] = canonical

        self._to_native = MappingProxyType(to_native)
        self._to_canonical = MappingProxyType(to_canonical)

    def __len__(self) -> int:
        return len(self._to_native)

    def canonical_symbols(self) -> Tuple[str, ...]:
        return tuple(self._to_native)

    def to_exchange_symbol(self, canonical: str) -> str:
        base, quote = split_canonical(canonical, self.exchange)
        native = self._to_native.get(join_canonical(base, quote))
        if native is None:
            raise UnknownSymbolError(canonical, exchange=self.exchange, reason="not in lookup table")
        return native

    def to_canonical_symbol(self, native: str) -> str:
        canonical = self._to_canonical.get((native or "").upper())
        if canonical is None:
            raise UnknownSymbolError(str(native), exchange=self.exchange, reason="not in lookup table")
        return canonical
