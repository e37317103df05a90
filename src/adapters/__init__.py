"""Adapters connecting the core pipeline to channels, storage and config."""
