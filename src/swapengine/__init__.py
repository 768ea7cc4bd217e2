"""Cross-chain HTLC atomic-swap engine."""

__version__ = "0.1.0"
