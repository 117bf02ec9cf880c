"""
Clipper billing service.

Subscription tiers, monthly usage quotas and Stripe reconciliation.
"""

__version__ = "0.1.0"
