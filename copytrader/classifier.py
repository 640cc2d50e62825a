"""
Order type classification.

Maps the venue's order type codes onto semantic flags. The mapping is one
table row per code so that "exactly one of buy/sell/exit" can be checked
row by row; unknown codes classify with every flag false and must be
skipped rather than guessed.
"""

from dataclasses import dataclass

from .models import OrderClass


@dataclass(frozen=True)
class OrderClassification:
    """Semantic flags for one order type code."""

    is_buy: bool = False
    is_sell: bool = False
    is_exit: bool = False
    is_long: bool = False
    is_short: bool = False
    is_market: bool = False
    is_limit: bool = False
    is_stop: bool = False

    @property
    def is_known(self) -> bool:
        return self.is_buy or self.is_sell or self.is_exit

    @property
    def order_class(self) -> OrderClass:
        """Market orders use the market endpoint; limit and stop use the limit endpoint."""
        return OrderClass.MARKET if self.is_market else OrderClass.LIMIT


UNKNOWN = OrderClassification()

# code -> (action, side, kind, description)
_ORDER_TYPES = {
    1: ("buy", "long", "market", "Market Buy"),
    2: ("buy", "long", "limit", "Limit Buy"),
    3: ("buy", "long", "stop", "Stop Buy"),
    4: ("sell", "short", "market", "Market Sell"),
    5: ("sell", "short", "limit", "Limit Sell"),
    6: ("sell", "short", "stop", "Stop Sell"),
    7: ("exit", "long", "market", "Market Exit Long"),
    8: ("exit", "long", "limit", "Limit Exit Long"),
    9: ("exit", "long", "stop", "Stop Exit Long"),
    10: ("exit", "short", "market", "Market Exit Short"),
    11: ("exit", "short", "limit", "Limit Exit Short"),
    12: ("exit", "short", "stop", "Stop Exit Short"),
}

KNOWN_ORDER_TYPES = tuple(sorted(_ORDER_TYPES))

_CLASSIFICATIONS = {
    code: OrderClassification(
        is_buy=action == "buy",
        is_sell=action == "sell",
        is_exit=action == "exit",
        is_long=side == "long",
        is_short=side == "short",
        is_market=kind == "market",
        is_limit=kind == "limit",
        is_stop=kind == "stop",
    )
    for code, (action, side, kind, _) in _ORDER_TYPES.items()
}

MARKET_NAMES = {
    "14": "APT-USD",
    "15": "BTC-USD",
    "16": "ETH-USD",
    "31": "SOL-USD",
    "1338": "APT-USD (Testnet)",
    "1339": "BTC-USD (Testnet)",
    "1340": "ETH-USD (Testnet)",
    "2387": "SOL-USD (Testnet)",
}


def classify(order_type_code: int) -> OrderClassification:
    """Classify a venue order type code. Unknown codes return UNKNOWN."""
    return _CLASSIFICATIONS.get(order_type_code, UNKNOWN)


def describe_order_type(order_type_code: int) -> str:
    entry = _ORDER_TYPES.get(order_type_code)
    return entry[3] if entry else f"Unknown ({order_type_code})"


def market_name(market_id: str) -> str:
    return MARKET_NAMES.get(str(market_id), f"Market {market_id}")
