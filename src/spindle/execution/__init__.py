"""Execution primitives: retry backoff and timeout watchdogs."""
