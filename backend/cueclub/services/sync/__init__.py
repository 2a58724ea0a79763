"""Staff-device sync engine.

Keeps a device's view of the club consistent with the authoritative store:
optimistic local mutations, per-collection push subscriptions with a polling
fallback, and a connection health monitor that decides between a blocking
overlay, a toast and silent degradation.
"""
