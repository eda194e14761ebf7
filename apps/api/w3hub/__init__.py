"""w3hub - multi-chain address tracking and asset alert service."""

__version__ = "1.0.0"
