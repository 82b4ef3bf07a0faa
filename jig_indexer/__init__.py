"""Ownership indexer for Run protocol NFTs on BSV."""

__version__ = "1.0.0"
