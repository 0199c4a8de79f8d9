"""
Booking core for a travel services agency.

Service requests (visa, flight, hotel, concierge, corporate travel,
consultation and package) become bookings with a human-readable reference,
a guarded status lifecycle and a payment ledger that reconciles Stripe and
Paystack webhooks exactly once.
"""

__version__ = "0.1.0"
