"""clinscribe: real-time clinical dictation with SOAP note generation."""

__version__ = "0.1.0"
