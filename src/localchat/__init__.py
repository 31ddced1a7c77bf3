"""Local LLM chat with streaming replies and on-demand image generation."""

__version__ = "0.1.0"
