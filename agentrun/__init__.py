"""agentrun: run LLM agents with sub-agent delegation and a per-agent memory log."""

__version__ = "0.1.0"
