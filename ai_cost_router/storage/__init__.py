"""
Storage layer for usage records.
"""
