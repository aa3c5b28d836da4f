"""
Core modules for AI Cost Router.

This package contains the routing policy, pricing, the cost ledger
and threshold checks.
"""
