"""CMI payment callback gateway."""
