"""
AI request orchestrator.

Routes generation requests to upstream LLM providers by cost and quality,
with a semantic cache, rate limits, circuit breakers and cost tracking.
"""

__version__ = "0.1.0"
