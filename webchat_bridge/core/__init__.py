"""Translation core: decode, normalize, emit, and track conversations."""
