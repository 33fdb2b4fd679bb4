"""
Tezos Delegation Indexer - Background Workers

The ingestion worker is started by the lifecycle coordinator, not run as a
standalone module.
"""
