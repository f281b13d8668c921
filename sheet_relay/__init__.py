"""Sheet Relay — append scraped records to a Google Form-backed sheet."""

__version__ = "0.1.0"
