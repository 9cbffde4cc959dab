"""Power-loss safety daemon: remote shutdown of dependent hosts on battery."""

__version__ = "0.1.0"
