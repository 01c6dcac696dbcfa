"""DEVSYNC: cross-references Intune and Defender device inventories."""

__version__ = "0.3.0"
