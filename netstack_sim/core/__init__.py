"""Core components for the node protocol stack.

This module contains the datalink framer, the path-vector network router,
the transport segmenter/reassembler, channel endpoints, the Node scheduler
and the in-process NetworkSimulator.
"""
