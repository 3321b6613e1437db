"""Model loading, tokenization, sampling, generation and streaming modules."""
