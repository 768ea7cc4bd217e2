"""Ledger adapters: an in-memory simulation plus EVM and Soroban HTLC contracts."""
