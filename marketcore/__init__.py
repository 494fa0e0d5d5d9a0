"""CPMM multi-outcome market core: pricing, answers, arbitrage, redemption."""

__version__ = "0.3.0"
