"""Bridge relayer: follows bridge events, seals L1 batches, relays vault updates."""
