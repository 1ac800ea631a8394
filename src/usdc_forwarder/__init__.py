"""Cross-chain USDC escrow deposit forwarder."""

__version__ = "0.1.0"
