"""Redis Cluster proxy parts: pooled buffers, a RESP parser, a slow-command log and logging."""

__version__ = "0.1.0"
__all__ = ["logging", "mbuf", "parser", "slowlog"]