"""Building blocks for a replicated SQLite file system: chunked streams, static
leases, position maps, HTTP clients, a consistency proxy and file-node logic."""

__version__ = "0.1.0"