"""Configuration, persistence, locking, errors and observability."""
