"""
AI Cost Router.

Routes user requests to upstream AI providers under per-role permissions
and budgets, and keeps an attributable ledger of what every request cost.
"""

__version__ = "0.2.0"
