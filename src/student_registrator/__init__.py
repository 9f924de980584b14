"""Student registrator: provisions identities onto access-control terminals."""

__version__ = "0.1.0"
