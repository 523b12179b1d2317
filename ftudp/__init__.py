"""FTUDP: a small FTP-like file transfer protocol over plain UDP datagrams.

Packages:
- ``transport``: packet framing, fragmentation and the asyncio datagram endpoint
- ``ftudp``: client session, server dispatcher, sessions and file operations
- ``tools``: transfer statistics
"""

__all__ = []
