"""CRUD helpers for the plain records around the billing core"""
from . import billing_settings, mandates, tiers

__all__ = ["billing_settings", "mandates", "tiers"]
