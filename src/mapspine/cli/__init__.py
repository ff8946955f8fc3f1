"""Command-line interface (``mapspine``)."""
