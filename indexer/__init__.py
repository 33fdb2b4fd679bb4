"""
Tezos Delegation Indexer - Service Package

Background ingestion of TzKT delegation operations into a local checkpoint
store, plus a read-only FastAPI endpoint for querying them by year.
"""

__version__ = "0.1.0"
