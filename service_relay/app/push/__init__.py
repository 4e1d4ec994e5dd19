"""Background push of the relay's own metrics."""
