"""marketbill - recurring platform-fee billing for the delivery marketplace."""

__version__ = "0.1.0"
