"""Core services: configuration, logging, Redis and shared resilience primitives."""
