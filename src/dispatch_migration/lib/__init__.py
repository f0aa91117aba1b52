"""Shared infrastructure: database pools, exceptions, logging, retry."""
