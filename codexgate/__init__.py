"""codexgate: relay WhatsApp messages from one number to the Codex CLI."""

__version__ = "0.1.0"
