"""Kita-kita: personal finance API and Telegram companion bot."""

__version__ = "0.1.0"
