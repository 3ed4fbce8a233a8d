"""Model backends, loading, tokenization, sampling and generation."""
