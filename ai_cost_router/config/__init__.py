"""
Configuration loading for routing policy, pricing and alert thresholds.
"""
