"""Marketplace adapters behind one capability-set contract.

Use :func:`marketsync.adapters.registry.get_adapter` to obtain the adapter for
a connection; nothing outside this package imports a marketplace module
directly.
"""
