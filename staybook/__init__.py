"""Homestay booking back end: orders, payments, identity tokens and messaging."""

__version__ = "0.1.0"