"""CardVault: digital card sales with gateway-confirmed fulfillment."""

__version__ = "0.1.0"
