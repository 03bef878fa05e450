"""Infrastructure helpers: configuration parsing, logging, storage paths."""
