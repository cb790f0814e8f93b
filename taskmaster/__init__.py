"""Task Master reminder occurrence service."""
