"""ChronoVault: proof-of-life and inheritance release coordinator."""

__version__ = "0.3.0"
