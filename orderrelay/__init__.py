"""Order relay: e-commerce order webhooks in, delivery partner dispatch out."""

__version__ = "0.1.0"
