"""
StableVPS
=========

Provisioning core of a Forex VPS reseller: provider adapters, order
handling, Stripe billing and provisioning reconciliation.
"""

__version__ = "1.0.0"
