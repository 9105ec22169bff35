"""LLM Shield: inline risk scoring and adaptive mitigation for chat prompts."""

__version__ = "0.4.0"
