"""
Urbain Transit - subscription billing core.

Provides:
- Plan catalog
- Idempotent payment capture and refunds
- Subscription lifecycle state machine
- Renewal sweep with grace-period expiry
- QR proof-of-subscription tokens
- Append-only subscription history
"""

__version__ = "1.0.0"
