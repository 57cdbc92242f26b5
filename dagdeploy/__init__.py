"""Idempotent, dependency-ordered deployment of contract graphs."""
