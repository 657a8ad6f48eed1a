"""Job engine: persistent job store, claim protocol and dispatcher.

Work is split into small jobs stored in SQLite. A stateless dispatcher
claims pending jobs atomically, runs one bounded tick per job and persists
the outcome (advance, complete, retry, fail) before releasing the claim,
so any number of short-lived invocations can drain the graph together.
"""
