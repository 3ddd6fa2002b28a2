"""EVM chain access: network table, token registry, pooled connections and contract gateways.

Submodules are imported directly (``escrow_guard.chain.connector`` etc.) so
that the configuration layer can depend on the network table alone.
"""
