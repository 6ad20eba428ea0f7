"""
wsbridge - stdio command bridge for a fingerprinted websocket connection
"""

__version__ = "0.1.0"
