"""Output surfaces for collected metric samples."""
