"""Chat backend with streamed completions and persisted conversation history."""

__version__ = "0.1.0"
