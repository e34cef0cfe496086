"""changegate - Safety gate and atomic apply for AI-generated changes."""

__version__ = "0.1.0"
