"""AI Super Nanny client: voice capture, event extraction and the baby-care timeline."""

__version__ = "0.1.0"
