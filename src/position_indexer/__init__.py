"""Position NFT indexer.

Folds Transfer events of a position-NFT contract into per-wallet aggregates,
per-position records, a raw event log and a per-wallet activity timeline.
"""

__version__ = "0.1.0"
