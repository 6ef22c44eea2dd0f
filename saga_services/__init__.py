"""Choreographed order-fulfillment saga services."""
