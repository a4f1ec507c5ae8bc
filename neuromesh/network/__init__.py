"""Cross-station consensus voting, subgraph exchange and replication."""
