"""
paycore

Account identity registry, credential verification, session tokens and a
balance-consistent transaction ledger for a payments backend.
"""

__version__ = "1.0.0"
