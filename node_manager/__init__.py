"""
Bitcoin Node Manager.

Supervises a bitcoind full node and an electrs indexer from a management console.
"""
