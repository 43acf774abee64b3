"""chatrelay: one streaming event protocol in front of hosted LLM APIs and CLI coding agents."""

__version__ = "0.1.0"
