"""
Core modules for the AI request orchestrator.

This package contains caching, rate limiting, circuit breaking, provider
routing, cost tracking and the orchestrator that ties them together.
"""
