"""Vector storage for the FAQ similarity index."""
