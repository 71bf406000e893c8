"""Core engines: policy, scoring, retries, records, cache, locks and persistence."""
