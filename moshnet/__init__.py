"""State-synchronization datagram transport: compression, fragments, packets, UDP connection, sender and transport."""

__version__ = "0.1.0"