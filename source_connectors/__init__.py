"""Source connectors discovered by evidence_engine.registry."""
