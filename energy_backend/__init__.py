"""Energy bill payments backend.

Bills, Razorpay orders, signed payment confirmations and the webhook stream
are reconciled here against a relational store.
"""

__version__ = '0.4.0'
