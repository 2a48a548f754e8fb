"""Crowdfunding backend: campaigns, donations and payment-gateway reconciliation."""

__version__ = "0.1.0"
