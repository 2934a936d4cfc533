"""ShardFlip: a pooled coin-flip betting ledger with a live stats mirror."""

__version__ = "1.0.0"
