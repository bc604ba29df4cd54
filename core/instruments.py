"""Tradable USDT-margined swap instruments."""

from dataclasses import dataclass


@dataclass(frozen=True)
class InstrumentSpec:
    """Exchange contract specification."""
    coin: str
    inst_id: str
    contract_value: float   # base-asset units per contract
    tick_size: float
    min_size: float         # minimum contract increment

    @property
    def price_decimals(self) -> int:
        return 4 if self.tick_size < 0.01 else 2

    def round_price(self, price: float) -> float:
        return round(price, self.price_decimals)


INSTRUMENTS: dict[str, InstrumentSpec] = {
    "BTC": InstrumentSpec("BTC", "BTC-USDT-SWAP", contract_value=0.01, tick_size=0.1, min_size=0.01),
    "ETH": InstrumentSpec("ETH", "ETH-USDT-SWAP", contract_value=0.1, tick_size=0.01, min_size=0.01),
    "BNB": InstrumentSpec("BNB", "BNB-USDT-SWAP", contract_value=0.01, tick_size=0.1, min_size=1),
    "SOL": InstrumentSpec("SOL", "SOL-USDT-SWAP", contract_value=1.0, tick_size=0.01, min_size=0.01),
    "XRP": InstrumentSpec("XRP", "XRP-USDT-SWAP", contract_value=100.0, tick_size=0.0001, min_size=0.01),
    "OKB": InstrumentSpec("OKB", "OKB-USDT-SWAP", contract_value=0.01, tick_size=0.01, min_size=1),
}

_BY_INST_ID = {spec.inst_id: spec for spec in INSTRUMENTS.values()}


def get_instrument(key: str) -> InstrumentSpec:
    """Look up by coin ("ETH") or exchange id ("ETH-USDT-SWAP")."""
    spec = INSTRUMENTS.get(key) or _BY_INST_ID.get(key)
    if spec is None:
        raise KeyError(f"Unknown instrument: {key}")
    return spec
