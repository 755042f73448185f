"""
API route modules.
"""
from billing_engine.api.routes import billing, subscriptions, tokenization, analytics

__all__ = ["billing", "subscriptions", "tokenization", "analytics"]
