"""Database loaders for mapped events."""
