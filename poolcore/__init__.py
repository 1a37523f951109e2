"""
PPLNS Mining Pool - Accounting Core

Background workers that ingest ckpool sharelogs, track pool-found blocks
through confirmation, distribute confirmed block rewards with PPLNS, and
pay participants out through the node wallet.
"""

__version__ = "0.1.0"

__all__ = [
    "blocks",
    "config",
    "models",
    "payouts",
    "pplns",
    "rpc",
    "run",
    "shares",
    "states",
    "storage",
    "tailer",
    "units",
]
