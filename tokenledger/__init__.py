"""tokenledger - local token usage rollups with policy-controlled sharing."""

__version__ = "0.1.0"
