"""Dependency vulnerability and supply-chain risk scanner for npm projects."""

__version__ = "0.1.0"
