"""Customer-service chat relay: browser chat, image and voice input forwarded to OpenAI."""

__version__ = "0.1.0"
