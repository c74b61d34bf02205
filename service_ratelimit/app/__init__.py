"""
Per-key rate-limiting core.

Counters hold capacity for one key, registries multiplex counters by key,
and the limiter façade turns a request into an admission decision.
"""
