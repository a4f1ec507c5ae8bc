"""The capability graph — nodes, edges, audit events and the stores that hold them.

- GraphStore / InMemoryGraphStore: the store interface and the local view
- SqliteGraphStore: persistence backend (shared primary or per-station)
- TelemetryRecorder: turns execution telemetry into node/edge counters
"""
