"""prefixload - mirror a local backup directory into an S3 bucket by file name prefix."""

__version__ = "0.4.0"
