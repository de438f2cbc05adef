"""Wallet-side message handling."""
