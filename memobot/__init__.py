"""memobot: a single-user Telegram assistant with long-term pattern memory."""

__version__ = "0.3.0"
