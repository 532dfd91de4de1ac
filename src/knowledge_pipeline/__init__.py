"""Knowledge pipeline: chat messages to documents and reviewed FAQs."""

__version__ = "0.1.0"
