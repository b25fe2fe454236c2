"""Cross-service event propagation fabric and gateway dispatch pipeline."""

__version__ = "0.1.0"
