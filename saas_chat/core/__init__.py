"""
Core modules for the SaaS chat backend.

This package contains token counting, the model catalog, pricing,
context window management and the entitlement policy.
"""
