"""Remote source connectors."""
