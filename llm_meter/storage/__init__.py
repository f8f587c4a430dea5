"""
Storage layer: usage events, ledgers and counter stores.
"""
