"""Backend adapters used by the repository layer."""
